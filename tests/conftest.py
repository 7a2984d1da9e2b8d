"""
Pytest Configuration

Points the backend at a throwaway data directory and an in-memory database
before any ``smartpause`` module is imported, and provides a scriptable fake
of the Anthropic Messages API mounted through ``httpx.MockTransport``.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

_DATA_DIR = tempfile.mkdtemp(prefix="smartpause-tests-")
os.environ["APP_DATA_DIR"] = _DATA_DIR
os.environ["LOG_DIR"] = os.path.join(_DATA_DIR, "logs")
os.environ["SMARTPAUSE_DB_PATH"] = ":memory:"
os.environ["BACKEND_TOKEN"] = ""
os.environ["BACKEND_WORKERS"] = "1"
os.environ["ANTHROPIC_API_KEY"] = "test-key"
os.environ["LLM_MAX_ATTEMPTS"] = "3"
os.environ["LLM_RETRY_BASE_DELAY_SEC"] = "0"
os.environ["SWEEP_INTERVAL_SEC"] = "3600"

import httpx
import pytest

from smartpause.db.connection import close_db, connect_db
from smartpause.services import llm
from smartpause.services.jobs import WorkerConfig

MINIMAL_WIZARD_DATA: Dict[str, Any] = {
    "situation": {
        "id": "liquidity",
        "title": "Liquidity Crunch",
        "description": "Cash is tight after a lost contract",
        "category": "finance",
        "urgency": "high",
    },
    "companyBasics": {
        "companyName": "Acme Fasteners",
        "industry": "Manufacturing",
        "revenue": "48M",
        "employees": "210",
        "founded": "1987",
    },
    "runwayInputs": {
        "cashOnHand": "3.2",
        "monthlyBurn": "0.4",
        "hasDebt": True,
        "debtAmount": "18",
        "debtMaturity": "18",
    },
    "signalChecklist": {"signals": ["Customer concentration"], "notes": ""},
    "dealEconomics": {
        "dealType": "buyout",
        "enterpriseValue": "60",
        "equityCheck": "25",
        "entryEbitda": "12",
        "ebitdaMargin": "25",
        "usRevenuePct": "70",
        "exportExposurePct": "20",
        "macroSensitivities": ["rates"],
        "timeHorizonMonths": 36,
    },
}

REPORT_PAYLOAD: Dict[str, Any] = {
    "executiveBrief": "Leverage is manageable; runway is eight months.",
    "valueLedger": "EV $60.0M | Debt $35.0M | Leverage 2.92x",
    "scenarios": "Base / Bear / Tail",
    "options": "Refinance before month 12.",
    "executionPlan": "Day 1-7: lender outreach.",
    "evidenceRegister": "[OBSERVED] EV, EBITDA",
    "integrity": {
        "completeness": 80,
        "evidenceQuality": 70,
        "confidence": 75,
        "missingData": [],
    },
    "governorDecision": {"decision": "PAUSE"},
}


def report_text(payload: Optional[Dict[str, Any]] = None) -> str:
    return "```json\n" + json.dumps(payload or REPORT_PAYLOAD) + "\n```"


def sse_body(text: str, model: str = llm.PRIMARY_MODEL) -> bytes:
    half = len(text) // 2
    events = [
        {"type": "message_start", "message": {"model": model}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text[:half]}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text[half:]}},
        {"type": "message_stop"},
    ]
    lines = [f"event: {event['type']}\ndata: {json.dumps(event)}\n\n" for event in events]
    return "".join(lines).encode("utf-8")


def message_response(body: Dict[str, Any], text: Optional[str] = None) -> httpx.Response:
    """Build a successful Anthropic response in the shape the request asked for."""
    text = report_text() if text is None else text
    if body.get("stream"):
        return httpx.Response(
            200,
            content=sse_body(text, body["model"]),
            headers={"content-type": "text/event-stream"},
        )
    return httpx.Response(
        200,
        json={"model": body["model"], "content": [{"type": "text", "text": text}]},
    )


def overloaded_response(status_code: int = 529) -> httpx.Response:
    return httpx.Response(
        status_code,
        json={"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
    )


Step = Callable[[Dict[str, Any]], Any]


class FakeAnthropic:
    """Replays scripted steps, then answers every request with a valid report."""

    def __init__(self) -> None:
        self.requests: List[Dict[str, Any]] = []
        self.steps: List[Step] = []
        self.delay = 0.0

    def script(self, *steps: Step) -> None:
        self.steps.extend(steps)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.steps:
            result = self.steps.pop(0)(body)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        return message_response(body)


@pytest.fixture(autouse=True)
def reset_circuit_breaker():
    llm.breaker.reset()
    yield
    llm.breaker.reset()


@pytest.fixture
def anthropic():
    fake = FakeAnthropic()
    llm.set_transport(httpx.MockTransport(fake.handler))
    yield fake
    llm.set_transport(None)


@pytest.fixture
def worker_config() -> WorkerConfig:
    return WorkerConfig(
        api_key="test-key",
        api_url="https://api.anthropic.test/v1/messages",
        api_version="2023-06-01",
        max_attempts=3,
        request_timeout_sec=5.0,
        retry_base_delay_sec=0.0,
    )


@pytest.fixture
def run_db():
    """Run a coroutine factory against a fresh in-memory database."""

    def _run(factory: Callable[[], Awaitable[Any]]) -> Any:
        async def runner() -> Any:
            await connect_db(":memory:")
            try:
                return await factory()
            finally:
                await close_db()

        return asyncio.run(runner())

    return _run


@pytest.fixture
def api_client(anthropic):
    from fastapi.testclient import TestClient

    from smartpause.main import app

    with TestClient(app) as client:
        yield client


def wait_for_status(client, job_id: str, statuses, timeout: float = 5.0) -> Dict[str, Any]:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get("/diagnostic-status", params={"job_id": job_id}).json()
        if body["status"] in statuses:
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"job {job_id} stuck in {body['status']}")
        time.sleep(0.02)
