from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from smartpause.api.deps import verify_ws_token
from smartpause.db import jobs_repo
from smartpause.utils.time import utc_now
from smartpause.websocket.manager import manager

router = APIRouter()


@router.websocket("/events")
async def events(websocket: WebSocket) -> None:
    """Push channel for log lines and job status/progress changes.

    Passing ``?job_id=...`` sends that job's current status right after the
    handshake so a client can switch from polling without missing a transition.
    """
    if not await verify_ws_token(websocket):
        return
    await manager.connect(websocket)
    await websocket.send_json({"type": "connected", "timestamp": utc_now()})
    job_id = websocket.query_params.get("job_id")
    if job_id:
        job = await jobs_repo.fetch_job(job_id)
        if job:
            await websocket.send_json(
                {
                    "type": "job.status",
                    "job_id": job_id,
                    "status": job["status"],
                    "progress_pct": job["progress_pct"],
                    "last_event": job["last_event"],
                }
            )
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)
