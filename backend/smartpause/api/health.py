from typing import Any, Dict

from fastapi import APIRouter, Depends

from smartpause.api.deps import verify_token
from smartpause.db.connection import fetchone
from smartpause.services.jobs import snapshot_worker_config, status_snapshot
from smartpause.services.llm import check_connectivity, sanitize_api_key
from smartpause.utils.time import utc_now

router = APIRouter()


@router.get("/health")
async def health() -> Dict[str, Any]:
    row = await fetchone("select count(*) as jobs from diagnostic_jobs")
    return {"status": "ok", "time": utc_now(), "jobs": row["jobs"] if row else 0}


@router.get("/status")
async def status(_: None = Depends(verify_token)) -> Dict[str, Any]:
    snapshot = status_snapshot()
    worker_config = snapshot_worker_config()
    snapshot["anthropic"] = {"configured": bool(sanitize_api_key(worker_config.api_key))}
    return snapshot


@router.get("/status/anthropic")
async def anthropic_status(_: None = Depends(verify_token)) -> Dict[str, Any]:
    """Live key and connectivity check; makes one small billable request."""
    worker_config = snapshot_worker_config()
    result = await check_connectivity(
        api_key=worker_config.api_key,
        api_url=worker_config.api_url,
        api_version=worker_config.api_version,
    )
    result["checked_at"] = utc_now()
    return result
