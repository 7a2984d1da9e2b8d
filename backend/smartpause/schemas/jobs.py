from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RUNNING})

TIERS = ("prospect", "executive", "full")
OUTPUT_MODES = ("snapshot", "rapid", "full")


class AIStatus(str, Enum):
    CALLING = "CALLING"
    RETRYING = "RETRYING"
    STREAM_OK = "STREAM_OK"
    NON_STREAM_OK = "NON_STREAM_OK"
    OVERLOADED = "OVERLOADED"
    PARSE_FAILED = "PARSE_FAILED"
    BACKEND_ERROR = "BACKEND_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    WORKER_ERROR = "WORKER_ERROR"


class DiagnosticStartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    wizard_data: Optional[Dict[str, Any]] = Field(default=None, alias="wizardData")
    output_mode: str = Field(default="rapid", alias="outputMode")
    tier: str = "full"
    normalized_intake: Optional[Dict[str, Any]] = Field(
        default=None, alias="normalizedIntake"
    )
    simulate_overload: bool = Field(default=False, alias="simulateOverload")


class JobStartResponse(BaseModel):
    job_id: str


class JobIdRequest(BaseModel):
    job_id: Optional[str] = None


class CancelResponse(BaseModel):
    success: bool = True


class JobStatusView(BaseModel):
    id: str
    status: JobStatus
    progress_pct: int
    last_event: Optional[str] = None
    ai_status: Optional[str] = None
    model_used: Optional[str] = None
    attempts: int = 0
    fail_reason: Optional[str] = None
    started_at: Optional[str] = None
    updated_at: str
    created_at: str
    tier: str


class JobResultView(BaseModel):
    status: JobStatus
    report: Optional[Dict[str, Any]] = None
    provenance: Optional[Dict[str, Any]] = None
    ai_status: Optional[str] = None
    model_used: Optional[str] = None
    attempts: int = 0
    fail_reason: Optional[str] = None


class Provenance(BaseModel):
    """How a completed report was produced."""

    ai_status: str
    model_used: str
    tier: str
    output_mode: str
    attempts: int
    retry_count: int
    started_at: Optional[str] = None
    timestamp: str
