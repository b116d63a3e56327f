from __future__ import annotations

import logging
import sys
import time
from datetime import timedelta
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from nfse_sync.domain import PRIORITY_SCHEDULED, JobKind, JobStatus, Tenant, TenantCredential
from nfse_sync.infrastructure import InMemoryJobStore, InMemoryTenantRegistry
from nfse_sync.workers import PeriodicTask, Scheduler


@pytest.fixture()
def registry(clock):
    registry = InMemoryTenantRegistry()
    registry.add_tenant(Tenant(id="acme", external_id="12345678000190", name="Acme"))
    registry.add_tenant(
        Tenant(id="globex", external_id="98765432000155", name="Globex", last_sync=clock.now - timedelta(hours=1))
    )
    registry.add_tenant(Tenant(id="initech", external_id="11222333000181", name="Initech", active=False))
    return registry


@pytest.fixture()
def store(clock):
    return InMemoryJobStore(clock=clock)


@pytest.fixture()
def scheduler(store, registry, clock):
    return Scheduler(store, registry, clock=clock)


def test_discovery_enqueues_one_consult_job_per_period(scheduler, store):
    jobs = scheduler.discover_due_tenants()

    assert {job.tenant_id for job in jobs} == {"acme"}
    assert [job.parameters["period"] for job in jobs] == ["2025-08", "2025-07", "2025-06", "2025-05"]
    assert all(job.kind == JobKind.CONSULT_PERIOD for job in jobs)
    assert all(job.priority == PRIORITY_SCHEDULED for job in jobs)

    again = scheduler.discover_due_tenants()
    assert [job.id for job in again] == [job.id for job in jobs]
    assert store.list_jobs()[1] == 4


def test_discovery_picks_up_tenant_once_interval_elapsed(scheduler, store, clock):
    scheduler.discover_due_tenants()
    clock.advance(hours=24)

    jobs = scheduler.discover_due_tenants()

    assert "globex" in {job.tenant_id for job in jobs}
    globex_periods = [job.parameters["period"] for job in jobs if job.tenant_id == "globex"]
    assert globex_periods == ["2025-08", "2025-07"]


def test_purge_uses_retention_window(store, registry, clock):
    scheduler = Scheduler(store, registry, clock=clock, job_retention_days=30)
    old = store.enqueue("acme", JobKind.CONSULT_PERIOD, 1, None, {"tenant_id": "acme", "period": "2025-01"})
    store.claim_pending(1)
    store.complete(old.id, {})
    clock.advance(days=29)
    assert scheduler.purge_old_jobs() == 0
    clock.advance(days=2)
    assert scheduler.purge_old_jobs() == 1


def test_reaper_requeues_jobs_running_past_timeout(store, registry, clock):
    scheduler = Scheduler(store, registry, clock=clock, running_job_timeout=30 * 60)
    job = store.enqueue("acme", JobKind.CONSULT_PERIOD, 1, None, {"tenant_id": "acme", "period": "2025-08"})
    store.claim_pending(1)

    clock.advance(minutes=20)
    assert scheduler.reap_stale_jobs() == []
    clock.advance(minutes=15)
    assert [item.id for item in scheduler.reap_stale_jobs()] == [job.id]
    assert store.get(job.id).status == JobStatus.PENDING


def test_credential_cleanup_drops_expired_entries(scheduler, registry, clock):
    registry.add_credential(TenantCredential("acme", "expired", expires_at=clock.now - timedelta(minutes=1)))
    registry.add_credential(TenantCredential("globex", "valid", expires_at=clock.now + timedelta(days=1)))
    registry.add_credential(TenantCredential("initech", "forever"))

    assert scheduler.cleanup_expired_credentials() == 1
    assert registry.get_credential("acme") is None
    assert registry.get_credential("globex") is not None
    assert registry.get_credential("initech") is not None


def test_failing_task_is_logged_and_skipped(scheduler, caplog):
    def explode():
        raise RuntimeError("registry unavailable")

    with caplog.at_level(logging.ERROR):
        assert scheduler.run_task(PeriodicTask("broken", 1.0, explode)) is False
    assert "broken" in caplog.text
    assert "registry unavailable" in caplog.text


def test_start_runs_discovery_immediately_and_stop_joins_threads(store, registry):
    scheduler = Scheduler(store, registry)
    scheduler.start()
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and store.list_jobs()[1] == 0:
            time.sleep(0.01)
    finally:
        scheduler.stop(timeout=5)

    assert store.list_jobs(tenant_id="acme")[1] >= 1
    assert not scheduler.running
