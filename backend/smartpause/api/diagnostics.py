import sqlite3
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request

from smartpause.api.deps import verify_token
from smartpause.core.errors import (
    DiagnosticError,
    NotFoundError,
    NotYetReadyError,
    ValidationError,
)
from smartpause.db import jobs_repo
from smartpause.schemas.jobs import (
    ACTIVE_STATUSES,
    OUTPUT_MODES,
    TIERS,
    CancelResponse,
    DiagnosticStartRequest,
    JobIdRequest,
    JobResultView,
    JobStartResponse,
    JobStatus,
    JobStatusView,
)
from smartpause.services.jobs import dispatch_job
from smartpause.websocket.manager import manager

router = APIRouter()


async def _resolve_job_id(request: Request, job_id: Optional[str]) -> str:
    if not job_id and request.method == "POST":
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            job_id = body.get("job_id")
    if not job_id:
        raise ValidationError("job_id is required")
    return str(job_id)


async def _load_job(job_id: str) -> Dict[str, Any]:
    job = await jobs_repo.fetch_job(job_id)
    if not job:
        raise NotFoundError()
    return job


@router.post("/diagnostic-start", response_model=JobStartResponse)
async def start_diagnostic(
    request: DiagnosticStartRequest, _: None = Depends(verify_token)
) -> JobStartResponse:
    if not request.wizard_data:
        raise ValidationError("wizardData is required")
    if request.tier not in TIERS:
        raise ValidationError(f"tier must be one of: {', '.join(TIERS)}")
    if request.output_mode not in OUTPUT_MODES:
        raise ValidationError(f"outputMode must be one of: {', '.join(OUTPUT_MODES)}")

    try:
        job_id = await jobs_repo.create_job(
            tier=request.tier,
            output_mode=request.output_mode,
            wizard_data=request.wizard_data,
            normalized_intake=request.normalized_intake,
            simulate_overload=request.simulate_overload,
        )
    except sqlite3.Error as exc:
        raise DiagnosticError(f"Failed to create job: {exc}") from exc

    # The job exists from here on; a stuck QUEUED job is the sweeper's to recover.
    try:
        await jobs_repo.record_event(
            job_id, "info", "job queued", {"tier": request.tier, "output_mode": request.output_mode}
        )
        await dispatch_job(job_id)
    except sqlite3.Error as exc:
        await manager.emit_log("error", f"job {job_id} created but not dispatched: {exc}")
    await manager.emit_log("info", f"diagnostic job queued {job_id} ({request.tier})")
    await manager.job_status(job_id, JobStatus.QUEUED.value)
    return JobStartResponse(job_id=job_id)


@router.api_route(
    "/diagnostic-status", methods=["GET", "POST"], response_model=JobStatusView
)
async def diagnostic_status(
    request: Request, job_id: Optional[str] = None, _: None = Depends(verify_token)
) -> JobStatusView:
    job = await _load_job(await _resolve_job_id(request, job_id))
    return JobStatusView(**{key: job[key] for key in JobStatusView.model_fields})


@router.api_route(
    "/diagnostic-result", methods=["GET", "POST"], response_model=JobResultView
)
async def diagnostic_result(
    request: Request, job_id: Optional[str] = None, _: None = Depends(verify_token)
) -> JobResultView:
    job = await _load_job(await _resolve_job_id(request, job_id))
    if JobStatus(job["status"]) in ACTIVE_STATUSES:
        raise NotYetReadyError(job["status"], job["progress_pct"], job["last_event"])
    return JobResultView(**{key: job[key] for key in JobResultView.model_fields})


@router.post("/diagnostic-cancel", response_model=CancelResponse)
async def diagnostic_cancel(
    request: JobIdRequest, _: None = Depends(verify_token)
) -> CancelResponse:
    if not request.job_id:
        raise ValidationError("job_id is required")
    cancelled = await jobs_repo.update_job_if_status(
        request.job_id,
        ACTIVE_STATUSES,
        status=JobStatus.CANCELLED,
        last_event="Cancelled by user",
    )
    if cancelled:
        await jobs_repo.record_event(request.job_id, "info", "job cancelled")
        await manager.emit_log("info", f"diagnostic job cancelled {request.job_id}")
        await manager.job_status(request.job_id, JobStatus.CANCELLED.value)
    return CancelResponse(success=True)


@router.get("/jobs/{job_id}/events")
async def job_events(job_id: str, _: None = Depends(verify_token)) -> Dict[str, Any]:
    await _load_job(job_id)
    return {"job_id": job_id, "events": await jobs_repo.fetch_events(job_id)}
