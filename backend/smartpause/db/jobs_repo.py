import json
import uuid
from typing import Any, Dict, Iterable, List, Optional

from smartpause.db.connection import execute, fetchall, fetchone
from smartpause.schemas.jobs import JobStatus
from smartpause.utils.time import utc_now

JSON_FIELDS = {"report", "provenance"}
IMMUTABLE_FIELDS = {
    "id",
    "tier",
    "output_mode",
    "wizard_data",
    "normalized_intake",
    "simulate_overload",
    "created_at",
}


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


def _row_to_job(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "status": row["status"],
        "tier": row["tier"],
        "output_mode": row["output_mode"],
        "wizard_data": _loads(row["wizard_data_json"]) or {},
        "normalized_intake": _loads(row["normalized_intake_json"]),
        "simulate_overload": bool(row["simulate_overload"]),
        "progress_pct": row["progress_pct"],
        "last_event": row["last_event"],
        "attempts": row["attempts"],
        "dispatch_attempts": row["dispatch_attempts"],
        "ai_status": row["ai_status"],
        "model_used": row["model_used"],
        "fail_reason": row["fail_reason"],
        "report": _loads(row["report_json"]),
        "provenance": _loads(row["provenance_json"]),
        "created_at": row["created_at"],
        "started_at": row["started_at"],
        "updated_at": row["updated_at"],
        "completed_at": row["completed_at"],
    }


async def create_job(
    tier: str,
    output_mode: str,
    wizard_data: Dict[str, Any],
    normalized_intake: Optional[Dict[str, Any]] = None,
    simulate_overload: bool = False,
) -> str:
    job_id = f"job_{uuid.uuid4().hex}"
    now = utc_now()
    await execute(
        """
        insert into diagnostic_jobs (
          id, status, tier, output_mode, wizard_data_json,
          normalized_intake_json, simulate_overload, progress_pct,
          last_event, attempts, dispatch_attempts, created_at, updated_at
        )
        values (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            JobStatus.QUEUED.value,
            tier,
            output_mode,
            json.dumps(wizard_data),
            json.dumps(normalized_intake) if normalized_intake is not None else None,
            1 if simulate_overload else 0,
            0,
            "Job queued",
            0,
            0,
            now,
            now,
        ),
    )
    return job_id


def _build_assignments(fields: Dict[str, Any]) -> tuple[List[str], List[Any]]:
    blocked = IMMUTABLE_FIELDS.intersection(fields)
    if blocked:
        raise ValueError(f"immutable job fields: {', '.join(sorted(blocked))}")
    fields["updated_at"] = utc_now()
    columns: List[str] = []
    values: List[Any] = []
    for key, value in fields.items():
        if isinstance(value, JobStatus):
            value = value.value
        if key in JSON_FIELDS:
            columns.append(f"{key}_json = ?")
            values.append(json.dumps(value) if value is not None else None)
        else:
            columns.append(f"{key} = ?")
            values.append(value)
    return columns, values


async def update_job(job_id: str, **fields: Any) -> bool:
    """Unconditional update for single-writer fields. Returns True if a row changed."""
    if not fields:
        return False
    columns, values = _build_assignments(fields)
    values.append(job_id)
    changed = await execute(
        f"update diagnostic_jobs set {', '.join(columns)} where id = ?",
        tuple(values),
    )
    return changed > 0


async def update_job_if_status(
    job_id: str, expected: Iterable[JobStatus], **fields: Any
) -> bool:
    """Compare-and-swap style update.

    Applies ``fields`` only while the stored status is one of ``expected``;
    returns False (and writes nothing) when another writer got there first.
    """
    expected_values = [JobStatus(status).value for status in expected]
    if not expected_values or not fields:
        return False
    columns, values = _build_assignments(fields)
    placeholders = ", ".join("?" for _ in expected_values)
    values.append(job_id)
    values.extend(expected_values)
    changed = await execute(
        f"update diagnostic_jobs set {', '.join(columns)} "
        f"where id = ? and status in ({placeholders})",
        tuple(values),
    )
    return changed > 0


async def increment_dispatch_attempts(job_id: str) -> bool:
    changed = await execute(
        """
        update diagnostic_jobs
        set dispatch_attempts = dispatch_attempts + 1, updated_at = ?
        where id = ? and status = ?
        """,
        (utc_now(), job_id, JobStatus.QUEUED.value),
    )
    return changed > 0


async def fetch_job(job_id: str) -> Optional[Dict[str, Any]]:
    row = await fetchone("select * from diagnostic_jobs where id = ?", (job_id,))
    if row is None:
        return None
    return _row_to_job(row)


async def fetch_status(job_id: str) -> Optional[str]:
    row = await fetchone("select status from diagnostic_jobs where id = ?", (job_id,))
    return row["status"] if row else None


async def fetch_jobs(limit: int = 200) -> List[Dict[str, Any]]:
    rows = await fetchall(
        "select * from diagnostic_jobs order by created_at desc limit ?", (limit,)
    )
    return [_row_to_job(row) for row in rows]


async def fetch_jobs_by_status(
    status: JobStatus, updated_before: Optional[str] = None
) -> List[Dict[str, Any]]:
    if updated_before is None:
        rows = await fetchall(
            "select * from diagnostic_jobs where status = ? order by created_at",
            (status.value,),
        )
    else:
        rows = await fetchall(
            """
            select * from diagnostic_jobs
            where status = ? and updated_at < ?
            order by created_at
            """,
            (status.value, updated_before),
        )
    return [_row_to_job(row) for row in rows]


async def record_event(
    job_id: str, level: str, message: str, meta: Optional[Dict[str, Any]] = None
) -> None:
    await execute(
        """
        insert into job_events (job_id, created_at, level, message, meta_json)
        values (?, ?, ?, ?, ?)
        """,
        (job_id, utc_now(), level, message, json.dumps(meta) if meta else None),
    )


async def fetch_events(job_id: str) -> List[Dict[str, Any]]:
    rows = await fetchall(
        "select * from job_events where job_id = ? order by event_id", (job_id,)
    )
    return [
        {
            "created_at": row["created_at"],
            "level": row["level"],
            "message": row["message"],
            "meta": _loads(row["meta_json"]),
        }
        for row in rows
    ]
