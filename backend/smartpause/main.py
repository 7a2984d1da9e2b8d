from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from smartpause.api.diagnostics import router as diagnostics_router
from smartpause.api.events import router as events_router
from smartpause.api.health import router as health_router
from smartpause.core.config import BACKEND_PORT, ensure_dirs
from smartpause.core.errors import register_exception_handlers
from smartpause.core.logging import setup_file_logging
from smartpause.db.connection import close_db, connect_db
from smartpause.services.jobs import start_workers, stop_workers
from smartpause.services.sweeper import requeue_pending_jobs, start_sweeper, stop_sweeper
from smartpause.websocket.manager import manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_dirs()
    setup_file_logging()
    await connect_db()
    await start_workers()
    await requeue_pending_jobs()
    await start_sweeper()
    await manager.emit_log("info", "backend started")

    yield

    await stop_sweeper()
    await stop_workers()
    await close_db()


app = FastAPI(title="SmartPause Diagnostic Backend", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)

app.include_router(health_router)
app.include_router(diagnostics_router)
app.include_router(events_router)


def run() -> None:
    import uvicorn

    uvicorn.run(
        "smartpause.main:app",
        host="127.0.0.1",
        port=BACKEND_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
