"""Worker tests: run ``process_job`` directly against the fake Anthropic API."""

import asyncio
import dataclasses

import httpx

from conftest import MINIMAL_WIZARD_DATA, message_response, overloaded_response
from smartpause.core import config
from smartpause.db import jobs_repo
from smartpause.schemas.jobs import ACTIVE_STATUSES, JobStatus
from smartpause.services import jobs, llm
from smartpause.services.jobs import (
    SIMULATED_OVERLOAD_REASON,
    attempt_progress,
    backoff_delay,
    process_job,
    snapshot_worker_config,
)
from smartpause.services.sweeper import sweep_stale_jobs


async def _run(worker_config, tier="prospect", **create_kwargs):
    job_id = await jobs_repo.create_job(
        tier=tier,
        output_mode="rapid",
        wizard_data=MINIMAL_WIZARD_DATA,
        **create_kwargs,
    )
    await process_job(job_id, worker_config)
    return await jobs_repo.fetch_job(job_id)


def test_prospect_job_completes_on_first_streaming_attempt(run_db, anthropic, worker_config):
    job = run_db(lambda: _run(worker_config))

    assert job["status"] == "COMPLETE"
    assert job["progress_pct"] == 100
    assert job["ai_status"] == "STREAM_OK"
    assert job["model_used"] == llm.PRIMARY_MODEL
    assert job["attempts"] == 1
    assert job["fail_reason"] is None
    assert job["completed_at"] is not None

    request = anthropic.requests[0]
    assert request["stream"] is True
    assert request["max_tokens"] == 10000
    assert "PROSPECT" in request["system"]

    report = job["report"]
    assert report["tier"] == "prospect"
    assert report["sections"]["executiveBrief"].startswith("Leverage is manageable")
    assert report["deterministic"]["debt"] == 35.0
    assert report["governorDecision"] == {"decision": "PAUSE"}
    assert report["provenance"] == job["provenance"]
    assert job["provenance"]["tier"] == "prospect"
    assert job["provenance"]["retry_count"] == 0


def test_overload_falls_back_to_secondary_model(run_db, anthropic, worker_config):
    anthropic.script(lambda body: overloaded_response(529))

    job = run_db(lambda: _run(worker_config))

    assert job["status"] == "COMPLETE"
    assert job["attempts"] == 2
    assert job["model_used"] == llm.FALLBACK_MODEL
    assert job["provenance"]["retry_count"] == 1
    assert [req["model"] for req in anthropic.requests] == [
        llm.PRIMARY_MODEL,
        llm.FALLBACK_MODEL,
    ]
    assert llm.breaker.snapshot()["recent_failures"] == 1


def test_third_attempt_uses_capped_non_streaming_call(run_db, anthropic, worker_config):
    anthropic.script(
        lambda body: overloaded_response(529),
        lambda body: overloaded_response(429),
    )

    job = run_db(lambda: _run(worker_config))

    assert job["status"] == "COMPLETE"
    assert job["ai_status"] == "NON_STREAM_OK"
    assert job["attempts"] == 3
    last = anthropic.requests[-1]
    assert last["stream"] is False
    assert last["model"] == llm.PRIMARY_MODEL
    assert last["max_tokens"] == llm.NON_STREAM_TOKEN_CAP["prospect"]


def test_unparseable_output_fails_after_all_attempts(run_db, anthropic, worker_config):
    anthropic.script(*[lambda body: message_response(body, text="I cannot help.")] * 3)

    job = run_db(lambda: _run(worker_config))

    assert job["status"] == "FAILED"
    assert job["ai_status"] == "PARSE_FAILED"
    assert job["attempts"] == 3
    assert "no JSON object" in job["fail_reason"]
    assert job["report"] is None
    assert job["last_event"].startswith("Failed:")


def test_rejected_request_is_not_retried(run_db, anthropic, worker_config):
    anthropic.script(
        lambda body: httpx.Response(
            400, json={"type": "error", "error": {"message": "max_tokens too large"}}
        )
    )

    job = run_db(lambda: _run(worker_config))

    assert job["status"] == "FAILED"
    assert job["attempts"] == 1
    assert job["ai_status"] == "BACKEND_ERROR"
    assert "[400]" in job["fail_reason"]
    assert len(anthropic.requests) == 1


def test_simulated_overload_fails_without_calling_backend(run_db, anthropic, worker_config):
    job = run_db(lambda: _run(worker_config, simulate_overload=True))

    assert job["status"] == "FAILED"
    assert job["attempts"] == worker_config.max_attempts
    assert job["fail_reason"] == SIMULATED_OVERLOAD_REASON
    assert job["ai_status"] == "OVERLOADED"
    assert job["model_used"] == "none"
    assert job["report"] is None
    assert anthropic.requests == []
    assert not llm.breaker.is_open()


def test_missing_api_key_fails_as_not_configured(run_db, anthropic, worker_config):
    no_key = dataclasses.replace(worker_config, api_key="  ")

    job = run_db(lambda: _run(no_key))

    assert job["status"] == "FAILED"
    assert job["ai_status"] == "NOT_CONFIGURED"
    assert job["attempts"] == 1
    assert anthropic.requests == []


def test_open_circuit_fails_fast(run_db, anthropic, worker_config):
    for _ in range(config.CIRCUIT_THRESHOLD):
        llm.breaker.record_failure()

    job = run_db(lambda: _run(worker_config))

    assert job["status"] == "FAILED"
    assert job["ai_status"] == "CIRCUIT_OPEN"
    assert job["fail_reason"] == "Circuit breaker OPEN"
    assert anthropic.requests == []


def test_cancelled_job_is_never_started(run_db, anthropic, worker_config):
    async def scenario():
        job_id = await jobs_repo.create_job("full", "rapid", MINIMAL_WIZARD_DATA)
        await jobs_repo.update_job_if_status(
            job_id, ACTIVE_STATUSES, status=JobStatus.CANCELLED
        )
        await process_job(job_id, worker_config)
        return await jobs_repo.fetch_job(job_id)

    job = run_db(scenario)

    assert job["status"] == "CANCELLED"
    assert job["started_at"] is None
    assert anthropic.requests == []


def test_cancel_during_backend_call_discards_report(run_db, anthropic, worker_config):
    async def scenario():
        job_id = await jobs_repo.create_job("full", "rapid", MINIMAL_WIZARD_DATA)

        async def cancel_then_answer(body):
            await jobs_repo.update_job_if_status(
                job_id,
                ACTIVE_STATUSES,
                status=JobStatus.CANCELLED,
                last_event="Cancelled by user",
            )
            return message_response(body)

        anthropic.script(cancel_then_answer)
        await process_job(job_id, worker_config)
        return await jobs_repo.fetch_job(job_id)

    job = run_db(scenario)

    assert job["status"] == "CANCELLED"
    assert job["report"] is None
    assert job["last_event"] == "Cancelled by user"


def test_unknown_job_is_dropped(run_db, anthropic, worker_config):
    assert run_db(lambda: process_job("job_missing", worker_config)) is None
    assert anthropic.requests == []


def test_normalized_intake_overrides_observed_values(run_db, anthropic, worker_config):
    job = run_db(
        lambda: _run(
            worker_config,
            normalized_intake={"observed": {"enterpriseValue_m": 80}},
        )
    )

    assert job["status"] == "COMPLETE"
    assert job["report"]["deterministic"]["ev"] == 80.0
    assert "Enterprise Value: $80.0M" in anthropic.requests[0]["messages"][0]["content"]
    assert job["wizard_data"]["dealEconomics"]["enterpriseValue"] == "60"


def test_events_record_the_attempt_history(run_db, anthropic, worker_config):
    anthropic.script(lambda body: overloaded_response(529))

    async def scenario():
        job = await _run(worker_config)
        return await jobs_repo.fetch_events(job["id"])

    messages = [event["message"] for event in run_db(scenario)]

    assert messages[0] == "job started"
    assert messages[1].startswith("attempt 1 failed")
    assert messages[-1] == "job completed"


def test_queued_dispatch_runs_through_worker_pool(run_db, anthropic):
    async def scenario():
        await jobs.start_workers(1)
        try:
            job_id = await jobs_repo.create_job("executive", "full", MINIMAL_WIZARD_DATA)
            assert await jobs.dispatch_job(job_id)
            await jobs.job_queue.join()
            return await jobs_repo.fetch_job(job_id)
        finally:
            await jobs.stop_workers()

    job = run_db(scenario)

    assert job["status"] == "COMPLETE"
    assert job["dispatch_attempts"] == 1
    assert anthropic.requests[0]["max_tokens"] == 16000


def test_full_queue_leaves_job_queued(run_db, monkeypatch):
    monkeypatch.setattr(config, "JOB_QUEUE_MAXSIZE", 1)

    async def scenario():
        await jobs.start_workers(0)
        try:
            first = await jobs_repo.create_job("full", "rapid", MINIMAL_WIZARD_DATA)
            second = await jobs_repo.create_job("full", "rapid", MINIMAL_WIZARD_DATA)
            results = (await jobs.dispatch_job(first), await jobs.dispatch_job(second))
            return results, await jobs_repo.fetch_job(second), await jobs_repo.fetch_events(second)
        finally:
            await jobs.stop_workers()

    (first_ok, second_ok), job, events = run_db(scenario)

    assert first_ok is True
    assert second_ok is False
    assert job["status"] == "QUEUED"
    assert job["dispatch_attempts"] == 1
    assert events[-1]["message"] == "worker dispatch failed"


def test_worker_config_is_snapshotted_at_dispatch(monkeypatch):
    monkeypatch.setattr(config, "ANTHROPIC_API_KEY", "key-one")
    monkeypatch.setattr(config, "LLM_MAX_ATTEMPTS", 0)
    snapshot = snapshot_worker_config()
    monkeypatch.setattr(config, "ANTHROPIC_API_KEY", "key-two")

    assert snapshot.api_key == "key-one"
    assert snapshot.max_attempts == 1


def test_attempt_progress_stays_inside_analysis_band():
    values = [attempt_progress(n, 3) for n in range(1, 4)]
    assert values == sorted(values)
    assert values[0] > 20
    assert values[-1] < 70


def test_backoff_grows_with_attempts():
    assert backoff_delay(1, 0.0) == 0.0
    assert 2.0 <= backoff_delay(2, 1.0) <= 3.0
    assert 4.0 <= backoff_delay(3, 1.0) <= 6.0


def test_duplicate_delivery_keeps_owner_registered(run_db, anthropic, monkeypatch):
    monkeypatch.setattr(config, "RUNNING_STALE_SEC", -10)

    async def scenario():
        gate = asyncio.Event()

        async def held(body):
            await gate.wait()
            return message_response(body)

        anthropic.script(held)
        await jobs.start_workers(2)
        try:
            job_id = await jobs_repo.create_job("full", "rapid", MINIMAL_WIZARD_DATA)
            await jobs.dispatch_job(job_id)
            while not anthropic.requests:
                await asyncio.sleep(0.01)

            # A second copy reaches the idle worker, which must skip it.
            jobs.enqueue_job(job_id)
            while jobs.job_queue.qsize() or job_id in jobs.queued_jobs:
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.1)

            owned = job_id in jobs.active_jobs
            summary = await sweep_stale_jobs()
            gate.set()
            await jobs.job_queue.join()
            return owned, summary, await jobs_repo.fetch_job(job_id), job_id in jobs.active_jobs
        finally:
            await jobs.stop_workers()

    owned, summary, job, owned_after = run_db(scenario)

    assert owned is True
    assert summary["failed_running"] == 0
    assert job["status"] == "COMPLETE"
    assert owned_after is False


def test_dispatch_skips_job_already_waiting(run_db):
    async def scenario():
        await jobs.start_workers(0)
        try:
            job_id = await jobs_repo.create_job("full", "rapid", MINIMAL_WIZARD_DATA)
            results = [await jobs.dispatch_job(job_id) for _ in range(3)]
            return results, jobs.job_queue.qsize(), await jobs_repo.fetch_job(job_id)
        finally:
            await jobs.stop_workers()

    results, depth, job = run_db(scenario)

    assert results == [True, True, True]
    assert depth == 1
    assert job["dispatch_attempts"] == 1
