from typing import Optional

from fastapi import Request, WebSocket

from smartpause.core.config import BACKEND_TOKEN
from smartpause.core.errors import UnauthorizedError


def _bearer(value: Optional[str]) -> Optional[str]:
    if value and value.lower().startswith("bearer "):
        return value[7:].strip()
    return None


async def verify_token(request: Request) -> None:
    if not BACKEND_TOKEN:
        return
    supplied = request.headers.get("X-Backend-Token") or _bearer(
        request.headers.get("Authorization")
    )
    if supplied != BACKEND_TOKEN:
        raise UnauthorizedError("unauthorized")


async def verify_ws_token(websocket: WebSocket) -> bool:
    if BACKEND_TOKEN and websocket.headers.get("x-backend-token") != BACKEND_TOKEN:
        await websocket.close(code=1008)
        return False
    return True
