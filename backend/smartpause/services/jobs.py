import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from smartpause.core import config
from smartpause.core.errors import BackendError, DispatchError
from smartpause.core.logging import logger
from smartpause.db import jobs_repo
from smartpause.schemas.jobs import AIStatus, JobStatus, Provenance
from smartpause.services.llm import (
    LLMError,
    LLMOverloadedError,
    LLMResponse,
    breaker,
    call_messages,
    model_chain,
)
from smartpause.services.prompts import (
    apply_normalized_intake,
    build_user_prompt,
    get_max_tokens,
    get_system_prompt,
)
from smartpause.services.report import ReportParseError, assemble_report, parse_report
from smartpause.utils.time import utc_now
from smartpause.websocket.manager import manager

SIMULATED_OVERLOAD_REASON = "Simulated overload for testing"


@dataclass(frozen=True)
class WorkerConfig:
    """Settings a single job runs with, captured when the job is dispatched."""

    api_key: str
    api_url: str
    api_version: str
    max_attempts: int
    request_timeout_sec: float
    retry_base_delay_sec: float


@dataclass(frozen=True)
class Dispatch:
    job_id: str
    worker_config: WorkerConfig


def snapshot_worker_config() -> WorkerConfig:
    return WorkerConfig(
        api_key=config.ANTHROPIC_API_KEY,
        api_url=config.ANTHROPIC_API_URL,
        api_version=config.ANTHROPIC_VERSION,
        max_attempts=max(1, config.LLM_MAX_ATTEMPTS),
        request_timeout_sec=config.LLM_REQUEST_TIMEOUT_SEC,
        retry_base_delay_sec=max(0.0, config.LLM_RETRY_BASE_DELAY_SEC),
    )


job_queue: Optional[asyncio.Queue[Dispatch]] = None
worker_tasks: List[asyncio.Task] = []
# Ids with a Dispatch waiting in job_queue, and ids a local worker has claimed.
queued_jobs: set[str] = set()
active_jobs: set[str] = set()
started_at = time.time()


async def start_workers(worker_count: Optional[int] = None) -> None:
    global job_queue
    job_queue = asyncio.Queue(maxsize=max(0, config.JOB_QUEUE_MAXSIZE))
    count = config.BACKEND_WORKERS if worker_count is None else worker_count
    for worker_id in range(count):
        worker_tasks.append(asyncio.create_task(worker_loop(worker_id, job_queue)))


async def stop_workers() -> None:
    global job_queue
    for task in worker_tasks:
        task.cancel()
    await asyncio.gather(*worker_tasks, return_exceptions=True)
    worker_tasks.clear()
    queued_jobs.clear()
    active_jobs.clear()
    job_queue = None


def enqueue_job(job_id: str, worker_config: Optional[WorkerConfig] = None) -> None:
    if job_queue is None:
        raise DispatchError("job dispatcher is not running")
    dispatch = Dispatch(job_id, worker_config or snapshot_worker_config())
    try:
        job_queue.put_nowait(dispatch)
    except asyncio.QueueFull as exc:
        raise DispatchError(f"job queue is full ({job_queue.maxsize} pending)") from exc
    queued_jobs.add(job_id)


async def dispatch_job(job_id: str) -> bool:
    """Hand a QUEUED job to the worker pool without waiting for it.

    A failed dispatch leaves the job QUEUED for the recovery sweep to retry.
    Jobs already waiting in the queue or owned by a worker are not re-sent.
    """
    if job_id in queued_jobs or job_id in active_jobs:
        return True
    await jobs_repo.increment_dispatch_attempts(job_id)
    try:
        enqueue_job(job_id)
    except DispatchError as exc:
        await jobs_repo.record_event(
            job_id, "error", "worker dispatch failed", {"error": exc.message}
        )
        await manager.emit_log("error", f"dispatch failed for {job_id}: {exc.message}")
        return False
    return True


async def worker_loop(worker_id: int, queue: asyncio.Queue[Dispatch]) -> None:
    await manager.emit_log("info", f"worker {worker_id} ready")
    while True:
        dispatch = await queue.get()
        queued_jobs.discard(dispatch.job_id)
        try:
            await process_job(dispatch.job_id, dispatch.worker_config)
        except Exception as exc:  # pragma: no cover - safety net
            logger.exception(f"worker {worker_id} crashed on {dispatch.job_id}: {exc}")
        finally:
            queue.task_done()


async def _advance(job_id: str, **fields: Any) -> bool:
    """Update a RUNNING job; False means it left RUNNING (e.g. was cancelled)."""
    updated = await jobs_repo.update_job_if_status(job_id, [JobStatus.RUNNING], **fields)
    if updated and "progress_pct" in fields:
        await manager.job_progress(
            job_id, fields["progress_pct"], fields.get("last_event") or ""
        )
    return updated


async def fail_job(
    job_id: str,
    reason: str,
    ai_status: str,
    expected: Iterable[JobStatus] = (JobStatus.RUNNING,),
    **extra: Any,
) -> bool:
    failed = await jobs_repo.update_job_if_status(
        job_id,
        expected,
        status=JobStatus.FAILED,
        fail_reason=reason,
        ai_status=ai_status,
        last_event=f"Failed: {reason}",
        completed_at=utc_now(),
        **extra,
    )
    if failed:
        await jobs_repo.record_event(job_id, "error", "job failed", {"reason": reason})
        await manager.emit_log("error", f"job {job_id} failed: {reason}")
        await manager.job_status(job_id, JobStatus.FAILED.value)
    return failed


def attempt_progress(attempt_no: int, max_attempts: int) -> int:
    return 20 + (50 * attempt_no) // (max_attempts + 1)


def backoff_delay(attempt_no: int, base_delay: float) -> float:
    delay = base_delay * (2 ** (attempt_no - 1))
    return delay + random.uniform(0, delay / 2)


def _failure_status(exc: Exception) -> str:
    if isinstance(exc, LLMError):
        return exc.ai_status.value
    return AIStatus.PARSE_FAILED.value


async def process_job(job_id: str, worker_config: WorkerConfig) -> None:
    job = await jobs_repo.fetch_job(job_id)
    if not job:
        logger.warning(f"job {job_id} not found; dropping dispatch")
        return
    if job["status"] != JobStatus.QUEUED.value:
        await manager.emit_log("info", f"job {job_id} is {job['status']}; skipping")
        return

    job_started_at = utc_now()
    claimed = await jobs_repo.update_job_if_status(
        job_id,
        [JobStatus.QUEUED],
        status=JobStatus.RUNNING,
        started_at=job_started_at,
        progress_pct=10,
        last_event="Deterministic precompute started",
    )
    if not claimed:
        await manager.emit_log("info", f"job {job_id} left QUEUED before start; skipping")
        return
    active_jobs.add(job_id)
    try:
        await jobs_repo.record_event(job_id, "info", "job started")
        await manager.job_status(job_id, JobStatus.RUNNING.value)
        await _run_diagnostic(job, job_started_at, worker_config)
    except BackendError as exc:
        await fail_job(job_id, exc.message, exc.ai_status)
    except Exception as exc:
        logger.exception(f"job {job_id} crashed: {exc}")
        await fail_job(job_id, f"{type(exc).__name__}: {exc}", AIStatus.WORKER_ERROR.value)
    finally:
        active_jobs.discard(job_id)


async def _run_diagnostic(
    job: Dict[str, Any], job_started_at: str, worker_config: WorkerConfig
) -> None:
    job_id = job["id"]
    tier = job["tier"]
    simulate = job["simulate_overload"]

    wizard_data = apply_normalized_intake(job["wizard_data"], job["normalized_intake"])
    system_prompt = get_system_prompt(tier)
    user_prompt = build_user_prompt(wizard_data, tier)
    chain = model_chain(tier, get_max_tokens(tier))

    if not await _advance(
        job_id,
        progress_pct=20,
        last_event="Precompute complete. Starting AI analysis...",
    ):
        await manager.emit_log("info", f"job {job_id} cancelled during precompute")
        return

    max_attempts = worker_config.max_attempts
    last_error: Optional[Exception] = None
    attempts = 0
    for attempt_no in range(1, max_attempts + 1):
        if await jobs_repo.fetch_status(job_id) != JobStatus.RUNNING.value:
            await manager.emit_log("info", f"job {job_id} cancelled before attempt {attempt_no}")
            return
        if not simulate and breaker.is_open():
            raise BackendError("Circuit breaker OPEN", AIStatus.CIRCUIT_OPEN.value)

        model_attempt = chain[min(attempt_no - 1, len(chain) - 1)]
        model_label = "none" if simulate else model_attempt.model
        attempts = attempt_no
        if not await _advance(
            job_id,
            attempts=attempts,
            progress_pct=attempt_progress(attempt_no, max_attempts),
            ai_status=(AIStatus.CALLING if attempt_no == 1 else AIStatus.RETRYING).value,
            model_used=model_label,
            last_event=f"AI analysis: trying {model_label} (attempt {attempt_no}/{max_attempts})",
        ):
            return

        try:
            if simulate:
                raise LLMOverloadedError(SIMULATED_OVERLOAD_REASON)
            response = await call_messages(
                model_attempt,
                system_prompt,
                user_prompt,
                api_key=worker_config.api_key,
                api_url=worker_config.api_url,
                api_version=worker_config.api_version,
                timeout_sec=worker_config.request_timeout_sec,
            )
            parsed = parse_report(response.text)
        except (LLMError, ReportParseError) as exc:
            last_error = exc
            await jobs_repo.record_event(
                job_id,
                "warn",
                f"attempt {attempt_no} failed: {exc}",
                {"model": model_label, "ai_status": _failure_status(exc)},
            )
            logger.warning(f"job {job_id} attempt {attempt_no}/{max_attempts} failed: {exc}")
            retryable = getattr(exc, "retryable", True)
            if not retryable or attempt_no == max_attempts:
                break
            if not await _advance(
                job_id,
                ai_status=_failure_status(exc),
                last_event=f"Attempt {attempt_no} failed ({exc}); retrying",
            ):
                return
            await asyncio.sleep(backoff_delay(attempt_no, worker_config.retry_base_delay_sec))
            continue

        await _complete(job, job_started_at, wizard_data, response, parsed, attempts)
        return

    reason = str(last_error) if last_error else "All model attempts exhausted"
    ai_status = _failure_status(last_error) if last_error else AIStatus.BACKEND_ERROR.value
    raise BackendError(reason, ai_status)


async def _complete(
    job: Dict[str, Any],
    job_started_at: str,
    wizard_data: Dict[str, Any],
    response: LLMResponse,
    parsed: Dict[str, Any],
    attempts: int,
) -> None:
    job_id = job["id"]
    ai_status = AIStatus.STREAM_OK if response.streaming else AIStatus.NON_STREAM_OK
    if not await _advance(
        job_id,
        progress_pct=70,
        ai_status=ai_status.value,
        model_used=response.model,
        last_event=f"AI analysis complete ({ai_status.value}). Building report...",
    ):
        return
    if not await _advance(job_id, progress_pct=85, last_event="Assembling report..."):
        return

    provenance = Provenance(
        ai_status=ai_status.value,
        model_used=response.model,
        tier=job["tier"],
        output_mode=job["output_mode"],
        attempts=attempts,
        retry_count=attempts - 1,
        started_at=job_started_at,
        timestamp=utc_now(),
    ).model_dump()
    report = assemble_report(parsed, wizard_data, job["tier"], job["output_mode"])
    report["provenance"] = provenance

    completed = await jobs_repo.update_job_if_status(
        job_id,
        [JobStatus.RUNNING],
        status=JobStatus.COMPLETE,
        progress_pct=100,
        last_event="Complete",
        report=report,
        provenance=provenance,
        ai_status=ai_status.value,
        model_used=response.model,
        attempts=attempts,
        fail_reason=None,
        completed_at=provenance["timestamp"],
    )
    if not completed:
        await manager.emit_log("info", f"job {job_id} cancelled; discarding report")
        return
    await jobs_repo.record_event(
        job_id, "info", "job completed", {"model": response.model, "attempts": attempts}
    )
    await manager.emit_log("info", f"job {job_id} completed with {ai_status.value}")
    await manager.job_status(job_id, JobStatus.COMPLETE.value)


def status_snapshot() -> Dict[str, Any]:
    workers = len(worker_tasks)
    return {
        "uptime_sec": int(time.time() - started_at),
        "queue_depth": job_queue.qsize() if job_queue is not None else 0,
        "workers": {
            "active": len(active_jobs),
            "idle": max(workers - len(active_jobs), 0),
        },
        "circuit": breaker.snapshot(),
    }
