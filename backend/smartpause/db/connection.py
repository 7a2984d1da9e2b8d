import asyncio
import sqlite3
from typing import Any, Optional

from smartpause.core.config import DB_PATH

db_lock = asyncio.Lock()
db_conn: sqlite3.Connection | None = None


def init_db(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        create table if not exists diagnostic_jobs (
          id text primary key,
          status text not null,
          tier text not null,
          output_mode text not null,
          wizard_data_json text not null,
          normalized_intake_json text,
          simulate_overload integer not null default 0,
          progress_pct integer not null default 0,
          last_event text,
          attempts integer not null default 0,
          dispatch_attempts integer not null default 0,
          ai_status text,
          model_used text,
          fail_reason text,
          report_json text,
          provenance_json text,
          created_at text not null,
          started_at text,
          updated_at text not null,
          completed_at text
        );
        """
    )
    conn.execute(
        """
        create index if not exists idx_diagnostic_jobs_status
        on diagnostic_jobs (status, updated_at);
        """
    )
    conn.execute(
        """
        create table if not exists job_events (
          event_id integer primary key,
          job_id text not null,
          created_at text not null,
          level text not null,
          message text not null,
          meta_json text
        );
        """
    )
    conn.execute(
        """
        create index if not exists idx_job_events_job
        on job_events (job_id, event_id);
        """
    )
    conn.commit()


async def connect_db(path: Optional[str] = None) -> None:
    global db_conn, db_lock
    db_lock = asyncio.Lock()
    db_conn = sqlite3.connect(path or DB_PATH, check_same_thread=False)
    db_conn.row_factory = sqlite3.Row
    init_db(db_conn)


async def close_db() -> None:
    global db_conn
    if db_conn:
        db_conn.close()
        db_conn = None


def _ensure_conn() -> sqlite3.Connection:
    if db_conn is None:
        raise RuntimeError("database not initialized")
    return db_conn


async def execute(query: str, params: tuple[Any, ...] = ()) -> int:
    """Run a write statement and return the number of affected rows."""
    async with db_lock:
        return await asyncio.to_thread(_execute_sync, query, params)


def _execute_sync(query: str, params: tuple[Any, ...]) -> int:
    conn = _ensure_conn()
    cur = conn.execute(query, params)
    conn.commit()
    return cur.rowcount


async def fetchone(
    query: str, params: tuple[Any, ...] = ()
) -> Optional[sqlite3.Row]:
    async with db_lock:
        return await asyncio.to_thread(_fetchone_sync, query, params)


def _fetchone_sync(
    query: str, params: tuple[Any, ...]
) -> Optional[sqlite3.Row]:
    conn = _ensure_conn()
    cur = conn.execute(query, params)
    return cur.fetchone()


async def fetchall(
    query: str, params: tuple[Any, ...] = ()
) -> list[sqlite3.Row]:
    async with db_lock:
        return await asyncio.to_thread(_fetchall_sync, query, params)


def _fetchall_sync(
    query: str, params: tuple[Any, ...]
) -> list[sqlite3.Row]:
    conn = _ensure_conn()
    cur = conn.execute(query, params)
    return cur.fetchall()
