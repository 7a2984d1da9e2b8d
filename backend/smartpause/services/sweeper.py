import asyncio
from typing import Dict, Optional

from smartpause.core import config
from smartpause.db import jobs_repo
from smartpause.schemas.jobs import AIStatus, JobStatus
from smartpause.services.jobs import active_jobs, dispatch_job, fail_job, queued_jobs
from smartpause.utils.time import utc_ago
from smartpause.websocket.manager import manager

NEVER_PICKED_UP = "Job was never picked up by a worker"
WORKER_STALLED = "Worker stopped responding"

_sweeper_task: Optional[asyncio.Task] = None


async def requeue_pending_jobs() -> int:
    """Re-dispatch every QUEUED job, e.g. after a restart emptied the queue."""
    count = 0
    for job in await jobs_repo.fetch_jobs_by_status(JobStatus.QUEUED):
        if job["id"] in queued_jobs or job["id"] in active_jobs:
            continue
        if await dispatch_job(job["id"]):
            count += 1
    if count:
        await manager.emit_log("info", f"requeued {count} pending job(s)")
    return count


async def sweep_stale_jobs() -> Dict[str, int]:
    summary = {"requeued": 0, "failed_queued": 0, "failed_running": 0}

    stale_queued = await jobs_repo.fetch_jobs_by_status(
        JobStatus.QUEUED, updated_before=utc_ago(config.QUEUED_STALE_SEC)
    )
    for job in stale_queued:
        # Still waiting behind busy workers, not lost.
        if job["id"] in queued_jobs or job["id"] in active_jobs:
            continue
        if job["dispatch_attempts"] >= config.MAX_DISPATCH_ATTEMPTS:
            if await fail_job(
                job["id"],
                NEVER_PICKED_UP,
                AIStatus.WORKER_ERROR.value,
                expected=[JobStatus.QUEUED],
            ):
                summary["failed_queued"] += 1
            continue
        if await dispatch_job(job["id"]):
            await jobs_repo.record_event(job["id"], "warn", "stale job re-dispatched")
            summary["requeued"] += 1

    stale_running = await jobs_repo.fetch_jobs_by_status(
        JobStatus.RUNNING, updated_before=utc_ago(config.RUNNING_STALE_SEC)
    )
    for job in stale_running:
        if job["id"] in active_jobs:
            continue
        if await fail_job(job["id"], WORKER_STALLED, AIStatus.WORKER_ERROR.value):
            summary["failed_running"] += 1

    if any(summary.values()):
        await manager.emit_log("warn", f"stale job sweep: {summary}")
    return summary


async def _sweeper_loop() -> None:
    await manager.emit_log("info", "stale job sweeper started")
    while True:
        await asyncio.sleep(config.SWEEP_INTERVAL_SEC)
        try:
            await sweep_stale_jobs()
        except Exception as exc:
            await manager.emit_log("error", f"stale job sweeper error: {exc}")


async def start_sweeper() -> None:
    global _sweeper_task
    if _sweeper_task and not _sweeper_task.done():
        return
    _sweeper_task = asyncio.create_task(_sweeper_loop())


async def stop_sweeper() -> None:
    global _sweeper_task
    if _sweeper_task:
        _sweeper_task.cancel()
        await asyncio.gather(_sweeper_task, return_exceptions=True)
        _sweeper_task = None
