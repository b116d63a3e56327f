from __future__ import annotations

import sys
import threading
import time
from datetime import timedelta
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from nfse_sync.domain import JobKind, JobStatus
from nfse_sync.domain.errors import ExternalFetchError, InvalidPayload, TenantNotFound
from nfse_sync.infrastructure import InMemoryJobStore
from nfse_sync.workers import JobProcessor


@pytest.fixture()
def store(clock):
    return InMemoryJobStore(clock=clock)


def _consult(store, period: str = "2025-08", **kwargs):
    return store.enqueue("acme", JobKind.CONSULT_PERIOD, 5, None, {"tenant_id": "acme", "period": period}, **kwargs)


def _processor(store, clock, handler, **kwargs):
    return JobProcessor(store, {JobKind.CONSULT_PERIOD: handler}, clock=clock, **kwargs)


def test_successful_handler_completes_job(store, clock):
    job = _consult(store)
    seen = []

    def handler(claimed, context):
        seen.append((claimed.id, claimed.status, context.job.id))
        return {"stored": 3}

    outcomes = _processor(store, clock, handler).run_once()

    assert seen == [(job.id, JobStatus.RUNNING, job.id)]
    assert [item.status for item in outcomes] == [JobStatus.COMPLETED]
    current = store.get(job.id)
    assert current.status == JobStatus.COMPLETED
    assert current.result == {"stored": 3}


def test_transient_failures_are_retried_with_linear_backoff(store, clock):
    job = _consult(store)
    calls = []

    def handler(claimed, context):
        calls.append(claimed.retry_count)
        raise ExternalFetchError("gateway timeout")

    processor = _processor(store, clock, handler, base_backoff=60)

    for attempt in range(3):
        started = clock.now
        processor.run_once()
        current = store.get(job.id)
        assert current.status == JobStatus.PENDING
        assert current.retry_count == attempt + 1
        assert current.scheduled_at == started + timedelta(seconds=60 * (attempt + 1))
        assert processor.run_once() == []
        clock.advance(seconds=60 * (attempt + 1))

    processor.run_once()
    current = store.get(job.id)
    assert current.status == JobStatus.FAILED
    assert current.retry_count == 3
    assert current.error_message == "ExternalFetchError: gateway timeout"
    assert calls == [0, 1, 2, 3]

    clock.advance(hours=1)
    assert processor.run_once() == []


@pytest.mark.parametrize("error", [InvalidPayload("bad period"), TenantNotFound("tenant acme not found")])
def test_permanent_errors_are_not_retried(store, clock, error):
    job = _consult(store)

    def handler(claimed, context):
        raise error

    _processor(store, clock, handler).run_once()

    current = store.get(job.id)
    assert current.status == JobStatus.FAILED
    assert current.retry_count == 0
    assert str(error) in current.error_message


def test_unexpected_exceptions_are_treated_as_transient(store, clock):
    job = _consult(store)

    def handler(claimed, context):
        raise KeyError("documents")

    _processor(store, clock, handler).run_once()

    current = store.get(job.id)
    assert current.status == JobStatus.PENDING
    assert current.retry_count == 1
    assert current.error_message.startswith("KeyError")


def test_job_kind_without_handler_fails_permanently(store, clock):
    job = store.enqueue("acme", JobKind.SYNC_DOCUMENTS, 1, None, {"tenant_id": "acme"})

    _processor(store, clock, lambda claimed, context: {}).run_once()

    current = store.get(job.id)
    assert current.status == JobStatus.FAILED
    assert current.retry_count == 0
    assert "no handler registered" in current.error_message


def test_batch_size_limits_claims_per_tick(store, clock):
    for month in range(1, 8):
        _consult(store, f"2025-{month:02d}")

    processor = _processor(store, clock, lambda claimed, context: {}, batch_size=5)

    assert len(processor.run_once()) == 5
    assert len(processor.run_once()) == 2
    assert processor.run_once() == []


def test_cancel_signals_running_handler(store, clock):
    job = _consult(store)
    started = threading.Event()

    def handler(claimed, context):
        started.set()
        assert context.cancel_event.wait(5)
        context.raise_if_cancelled()
        return {"unreachable": True}

    processor = _processor(store, clock, handler)
    runner = threading.Thread(target=processor.run_once)
    runner.start()
    assert started.wait(5)

    cancelled = processor.cancel(job.id)
    runner.join(5)

    assert cancelled.status == JobStatus.CANCELLED
    current = store.get(job.id)
    assert current.status == JobStatus.CANCELLED
    assert current.result is None


def test_result_is_discarded_when_job_lost_its_claim(store, clock):
    job = _consult(store)

    def handler(claimed, context):
        store.cancel(claimed.id)
        return {"stored": 1}

    outcomes = _processor(store, clock, handler).run_once()

    assert outcomes == []
    assert store.get(job.id).status == JobStatus.CANCELLED


def test_background_loop_processes_jobs_until_stopped():
    store = InMemoryJobStore()
    job = _consult(store)
    processor = JobProcessor(store, {JobKind.CONSULT_PERIOD: lambda claimed, context: {"ok": True}}, interval=0.01)

    processor.start()
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and store.get(job.id).status != JobStatus.COMPLETED:
            time.sleep(0.01)
    finally:
        processor.stop(timeout=5)

    assert store.get(job.id).status == JobStatus.COMPLETED
    assert not processor.running
