from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from smartpause.core.logging import logger


class DiagnosticError(Exception):
    """Base class for pipeline errors that map onto an HTTP status."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationError(DiagnosticError):
    """Missing or malformed request; no job is created."""

    status_code = 400


class UnauthorizedError(DiagnosticError):
    status_code = 401


class NotFoundError(DiagnosticError):
    status_code = 404

    def __init__(self, message: str = "Job not found") -> None:
        super().__init__(message)


class NotYetReadyError(DiagnosticError):
    """The job exists but has not reached a terminal state yet.

    Pollers should treat this as "keep waiting", not as a failure.
    """

    status_code = 409

    def __init__(
        self,
        status: str,
        progress_pct: int,
        last_event: Optional[str],
        message: str = "Job not complete",
    ) -> None:
        super().__init__(message)
        self.status = status
        self.progress_pct = progress_pct
        self.last_event = last_event

    def to_body(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "status": self.status,
            "progress_pct": self.progress_pct,
            "last_event": self.last_event,
        }


class BackendError(DiagnosticError):
    """The LLM backend could not produce a report after all attempts."""

    def __init__(self, message: str, ai_status: str = "FAILED") -> None:
        super().__init__(message)
        self.ai_status = ai_status


class DispatchError(DiagnosticError):
    """The worker could not be triggered for a job."""

    status_code = 503


async def _diagnostic_error_handler(
    request: Request, exc: DiagnosticError
) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "invalid request"
    return JSONResponse(status_code=400, content={"error": message})


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"{request.method} {request.url.path} crashed: {exc}")
    return JSONResponse(status_code=500, content={"error": "internal server error"})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DiagnosticError, _diagnostic_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
