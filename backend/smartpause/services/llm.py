import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from smartpause.core.config import (
    CIRCUIT_OPEN_SEC,
    CIRCUIT_THRESHOLD,
    CIRCUIT_WINDOW_SEC,
)
from smartpause.core.logging import logger
from smartpause.schemas.jobs import AIStatus

PRIMARY_MODEL = "claude-sonnet-4-20250514"
FALLBACK_MODEL = "claude-3-5-sonnet-20241022"
NON_STREAM_TOKEN_CAP = {"prospect": 4096, "executive": 8192, "full": 16384}
OVERLOAD_STATUS_CODES = {429, 503, 529}
CONNECT_TIMEOUT_SEC = 10.0
CHECK_MODEL = "claude-3-haiku-20240307"


class LLMError(Exception):
    retryable = True
    ai_status = AIStatus.BACKEND_ERROR


class LLMOverloadedError(LLMError):
    """Rate-limit or overload signal from the backend."""

    ai_status = AIStatus.OVERLOADED


class LLMTransportError(LLMError):
    """Timeouts, connection failures and 5xx responses."""


class LLMEmptyResponseError(LLMError):
    pass


class LLMRequestError(LLMError):
    """The backend rejected the request itself; retrying will not help."""

    retryable = False


class LLMNotConfiguredError(LLMError):
    retryable = False
    ai_status = AIStatus.NOT_CONFIGURED


@dataclass(frozen=True)
class ModelAttempt:
    model: str
    streaming: bool
    max_tokens: int


@dataclass
class LLMResponse:
    text: str
    model: str
    streaming: bool


def model_chain(tier: str, base_max_tokens: int) -> List[ModelAttempt]:
    capped = min(base_max_tokens, NON_STREAM_TOKEN_CAP.get(tier, NON_STREAM_TOKEN_CAP["full"]))
    return [
        ModelAttempt(PRIMARY_MODEL, True, base_max_tokens),
        ModelAttempt(FALLBACK_MODEL, True, base_max_tokens),
        ModelAttempt(PRIMARY_MODEL, False, capped),
    ]


def sanitize_api_key(raw: str) -> str:
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        value = value[1:-1].strip()
    if value.lower().startswith("bearer "):
        value = value[7:].strip()
    return value


class CircuitBreaker:
    """Opens after ``threshold`` overload failures inside ``window_sec``."""

    def __init__(self, window_sec: float, threshold: int, open_sec: float) -> None:
        self.window_sec = window_sec
        self.threshold = threshold
        self.open_sec = open_sec
        self.failures: List[float] = []
        self.open_until = 0.0

    def record_failure(self, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        self.failures.append(now)
        self.failures = [ts for ts in self.failures if now - ts < self.window_sec]
        if len(self.failures) >= self.threshold:
            self.open_until = now + self.open_sec
            logger.warning(
                f"llm circuit opened for {self.open_sec:.0f}s "
                f"after {len(self.failures)} overloads"
            )

    def is_open(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now < self.open_until

    def reset(self) -> None:
        self.failures = []
        self.open_until = 0.0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "open": self.is_open(),
            "recent_failures": len(self.failures),
            "open_until": self.open_until or None,
        }


breaker = CircuitBreaker(CIRCUIT_WINDOW_SEC, CIRCUIT_THRESHOLD, CIRCUIT_OPEN_SEC)

# Tests swap in an httpx.MockTransport here.
_transport: Optional[httpx.AsyncBaseTransport] = None


def set_transport(transport: Optional[httpx.AsyncBaseTransport]) -> None:
    global _transport
    _transport = transport


def _classify_error(status_code: int, detail: str, model: str) -> LLMError:
    message = f"Anthropic API error [{status_code}]: {model}"
    if status_code in OVERLOAD_STATUS_CODES or "overloaded" in detail.lower():
        return LLMOverloadedError(message)
    if status_code >= 500:
        return LLMTransportError(message)
    return LLMRequestError(f"{message}: {detail[:200]}")


async def _read_stream(response: httpx.Response, attempt: ModelAttempt) -> LLMResponse:
    chunks: List[str] = []
    model = ""
    async for line in response.aiter_lines():
        if not line.startswith("data: "):
            continue
        raw = line[6:].strip()
        if not raw or raw == "[DONE]":
            continue
        try:
            event = json.loads(raw)
        except json.JSONDecodeError:
            continue
        event_type = event.get("type")
        if event_type == "error":
            error = event.get("error") or {}
            message = error.get("message") or json.dumps(error)
            if error.get("type") == "overloaded_error" or "overloaded" in message.lower():
                raise LLMOverloadedError(f"{attempt.model} overloaded in-stream")
            raise LLMTransportError(f"{attempt.model} stream error: {message}")
        if event_type == "message_start":
            model = (event.get("message") or {}).get("model") or model
        elif event_type == "content_block_delta":
            text = (event.get("delta") or {}).get("text")
            if text:
                chunks.append(text)
    return LLMResponse(text="".join(chunks), model=model or attempt.model, streaming=True)


def _read_message(data: Dict[str, Any], attempt: ModelAttempt) -> LLMResponse:
    blocks = data.get("content") or []
    text = "".join(
        block.get("text") or "" for block in blocks if block.get("type") == "text"
    )
    return LLMResponse(
        text=text, model=data.get("model") or attempt.model, streaming=False
    )


def _headers(key: str, api_version: str) -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "x-api-key": key,
        "anthropic-version": api_version,
    }


def _client(timeout_sec: float) -> httpx.AsyncClient:
    timeout = httpx.Timeout(timeout_sec, connect=min(CONNECT_TIMEOUT_SEC, timeout_sec))
    return httpx.AsyncClient(timeout=timeout, transport=_transport)


async def _send(
    attempt: ModelAttempt,
    api_url: str,
    headers: Dict[str, str],
    body: Dict[str, Any],
    timeout_sec: float,
) -> LLMResponse:
    async with _client(timeout_sec) as client:
        if attempt.streaming:
            async with client.stream("POST", api_url, headers=headers, json=body) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise _classify_error(response.status_code, response.text, attempt.model)
                return await _read_stream(response, attempt)

        response = await client.post(api_url, headers=headers, json=body)
        if response.status_code >= 400:
            raise _classify_error(response.status_code, response.text, attempt.model)
        try:
            data = response.json()
        except ValueError as exc:
            raise LLMTransportError(f"{attempt.model} returned a non-JSON body") from exc
        return _read_message(data, attempt)


async def call_messages(
    attempt: ModelAttempt,
    system_prompt: str,
    user_prompt: str,
    *,
    api_key: str,
    api_url: str,
    api_version: str,
    timeout_sec: float,
) -> LLMResponse:
    """One request against the Anthropic Messages API.

    ``timeout_sec`` bounds the whole request including the stream read, not
    just each socket read. Raises an :class:`LLMError` subclass on any
    failure; overloads also count towards the process-wide circuit breaker.
    """
    key = sanitize_api_key(api_key or "")
    if not key:
        raise LLMNotConfiguredError("ANTHROPIC_API_KEY not configured")

    body = {
        "model": attempt.model,
        "max_tokens": attempt.max_tokens,
        "stream": attempt.streaming,
        "system": system_prompt,
        "messages": [{"role": "user", "content": user_prompt}],
    }

    try:
        result = await asyncio.wait_for(
            _send(attempt, api_url, _headers(key, api_version), body, timeout_sec),
            timeout=timeout_sec,
        )
    except LLMOverloadedError:
        breaker.record_failure()
        raise
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        raise LLMTransportError(
            f"{attempt.model} request timed out after {timeout_sec:g}s"
        ) from exc
    except httpx.TransportError as exc:
        raise LLMTransportError(f"{attempt.model} transport error: {exc}") from exc

    if not result.text.strip():
        raise LLMEmptyResponseError(f"{attempt.model} returned empty text")
    return result


async def check_connectivity(
    *, api_key: str, api_url: str, api_version: str, timeout_sec: float = 20.0
) -> Dict[str, Any]:
    """Send a tiny request to confirm the key is set and the API answers."""
    key = sanitize_api_key(api_key or "")
    if not key:
        return {
            "configured": False,
            "reachable": False,
            "error": "ANTHROPIC_API_KEY not configured",
        }

    body = {
        "model": CHECK_MODEL,
        "max_tokens": 16,
        "messages": [{"role": "user", "content": "Reply with OK."}],
    }
    try:
        async with _client(timeout_sec) as client:
            response = await client.post(
                api_url, headers=_headers(key, api_version), json=body
            )
    except httpx.HTTPError as exc:
        return {"configured": True, "reachable": False, "error": f"transport error: {exc}"}

    if response.status_code >= 400:
        return {
            "configured": True,
            "reachable": False,
            "error": f"Anthropic API error [{response.status_code}]: {response.text[:200]}",
        }
    try:
        model = response.json().get("model") or CHECK_MODEL
    except ValueError:
        model = CHECK_MODEL
    return {"configured": True, "reachable": True, "model": model}
