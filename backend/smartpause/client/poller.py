import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

DEFAULT_TIMEOUT = httpx.Timeout(20.0, connect=10.0)


class ClientError(Exception):
    def __init__(self, status_code: int, message: str, body: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"[{status_code}] {message}")
        self.status_code = status_code
        self.message = message
        self.body = body or {}


class JobNotReadyError(ClientError):
    """Result requested while the job is still QUEUED or RUNNING."""


class JobFailedError(Exception):
    def __init__(self, fail_reason: str, result: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(fail_reason)
        self.fail_reason = fail_reason
        self.result = result or {}


class JobCancelledError(Exception):
    pass


class PollTimeoutError(Exception):
    pass


class PollCancelledError(Exception):
    pass


@dataclass
class ProgressUpdate:
    stage: str
    pct: int
    message: str


def status_to_progress(status: Dict[str, Any]) -> ProgressUpdate:
    pct = int(status.get("progress_pct") or 0)
    message = status.get("last_event") or ""
    state = status.get("status")
    if state == "QUEUED":
        return ProgressUpdate("precompute", max(pct, 5), message or "Queued...")
    if state == "RUNNING":
        if pct <= 20:
            return ProgressUpdate("precompute", pct, message)
        if pct <= 70:
            return ProgressUpdate("ai-analysis", pct, message)
        return ProgressUpdate("tier-enforcement", pct, message)
    if state == "COMPLETE":
        return ProgressUpdate("complete", 100, "Complete")
    if state == "FAILED":
        return ProgressUpdate("failed", pct, message or "Job failed")
    if state == "CANCELLED":
        return ProgressUpdate("cancelled", pct, "Cancelled")
    return ProgressUpdate("precompute", pct, message)


class DiagnosticClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["X-Backend-Token"] = token
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "DiagnosticClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        response = await self._client.request(method, path, params=params, json=json_body)
        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {"error": response.text.strip() or response.reason_phrase}
        if response.status_code == 409:
            raise JobNotReadyError(409, body.get("error", "Job not complete"), body)
        if response.status_code >= 400:
            message = body.get("error") or response.reason_phrase
            raise ClientError(response.status_code, message, body)
        return body

    async def start(
        self,
        wizard_data: Dict[str, Any],
        output_mode: str = "rapid",
        tier: str = "full",
        normalized_intake: Optional[Dict[str, Any]] = None,
        simulate_overload: bool = False,
    ) -> str:
        payload: Dict[str, Any] = {
            "wizardData": wizard_data,
            "outputMode": output_mode,
            "tier": tier,
            "simulateOverload": simulate_overload,
        }
        if normalized_intake is not None:
            payload["normalizedIntake"] = normalized_intake
        body = await self._request("POST", "/diagnostic-start", json_body=payload)
        return body["job_id"]

    async def status(self, job_id: str) -> Dict[str, Any]:
        return await self._request("GET", "/diagnostic-status", params={"job_id": job_id})

    async def result(self, job_id: str) -> Dict[str, Any]:
        return await self._request("GET", "/diagnostic-result", params={"job_id": job_id})

    async def cancel(self, job_id: str) -> None:
        await self._request("POST", "/diagnostic-cancel", json_body={"job_id": job_id})

    async def poll_until_done(
        self,
        job_id: str,
        on_progress: Optional[Callable[[ProgressUpdate], None]] = None,
        interval: float = 1.5,
        max_interval: Optional[float] = None,
        backoff: float = 1.0,
        timeout: float = 300.0,
        cancel_event: Optional[asyncio.Event] = None,
        cancel_on_stop: bool = True,
    ) -> Dict[str, Any]:
        """Poll status until terminal, then fetch the result exactly once.

        Raises JobFailedError, JobCancelledError, PollTimeoutError or
        PollCancelledError; returns the result body on COMPLETE.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        delay = interval

        while True:
            if cancel_event is not None and cancel_event.is_set():
                if cancel_on_stop:
                    await self.cancel(job_id)
                raise PollCancelledError(f"polling stopped for {job_id}")

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise PollTimeoutError(f"job {job_id} not finished after {timeout:.0f}s")
            try:
                status = await asyncio.wait_for(self.status(job_id), timeout=remaining)
            except asyncio.TimeoutError as exc:
                raise PollTimeoutError(
                    f"job {job_id} not finished after {timeout:.0f}s"
                ) from exc

            if on_progress is not None:
                on_progress(status_to_progress(status))

            state = status.get("status")
            if state == "COMPLETE":
                return await self.result(job_id)
            if state == "FAILED":
                result = await self.result(job_id)
                reason = result.get("fail_reason") or status.get("last_event") or "Job failed"
                raise JobFailedError(reason, result)
            if state == "CANCELLED":
                raise JobCancelledError(f"job {job_id} was cancelled")

            wait = min(delay, max(deadline - loop.time(), 0.0))
            if cancel_event is not None:
                try:
                    await asyncio.wait_for(cancel_event.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait)
            delay = delay * backoff
            if max_interval is not None:
                delay = min(delay, max_interval)
