"""Periodic tasks: tenant discovery and queue maintenance."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

from nfse_sync.core.clock import Clock, utc_now
from nfse_sync.core.sync_policy import periods_to_consult
from nfse_sync.domain import PRIORITY_SCHEDULED, Job, JobKind
from nfse_sync.domain.errors import IngestionError
from nfse_sync.infrastructure import JobStore, TenantRegistry

logger = logging.getLogger(__name__)

HOUR = 60 * 60.0
DAY = 24 * HOUR


@dataclass(slots=True)
class PeriodicTask:
    name: str
    interval: float
    action: Callable[[], Any]
    run_on_start: bool = False


class Scheduler:
    """Owns one thread per periodic task.

    A task that raises is logged and waits for its next tick; the other
    tasks are not affected.
    """

    def __init__(
        self,
        store: JobStore,
        registry: TenantRegistry,
        *,
        discovery_interval: float = HOUR,
        credential_cleanup_interval: float = DAY,
        job_cleanup_interval: float = 7 * DAY,
        job_retention_days: int = 30,
        reaper_interval: float = 5 * 60.0,
        running_job_timeout: float = 30 * 60.0,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._registry = registry
        self._retention = timedelta(days=job_retention_days)
        self._running_timeout = timedelta(seconds=running_job_timeout)
        self._clock = clock
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self.tasks = [
            PeriodicTask("tenant-discovery", discovery_interval, self.discover_due_tenants, run_on_start=True),
            PeriodicTask("credential-cleanup", credential_cleanup_interval, self.cleanup_expired_credentials),
            PeriodicTask("job-cleanup", job_cleanup_interval, self.purge_old_jobs),
            PeriodicTask("stale-job-reaper", reaper_interval, self.reap_stale_jobs),
        ]

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._run_task, args=(task,), name=f"scheduler-{task.name}", daemon=True)
            for task in self.tasks
        ]
        for thread in self._threads:
            thread.start()
        logger.info("scheduler started with %d tasks", len(self.tasks))

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("scheduler stopped")

    def _run_task(self, task: PeriodicTask) -> None:
        if task.run_on_start:
            self.run_task(task)
        while not self._stop.wait(task.interval):
            self.run_task(task)

    def run_task(self, task: PeriodicTask) -> bool:
        try:
            task.action()
        except Exception:
            logger.exception("scheduled task %s failed, skipping this tick", task.name)
            return False
        return True

    # ------------------------------------------------------------------
    # tasks
    # ------------------------------------------------------------------
    def discover_due_tenants(self) -> list[Job]:
        """Enqueue one consult job per period for every tenant due for sync."""

        now = self._clock()
        tenants = self._registry.get_active_tenants_due_for_sync(now)
        enqueued: list[Job] = []
        for tenant in tenants:
            for period in periods_to_consult(tenant, now):
                try:
                    job = self._store.enqueue(
                        tenant.id,
                        JobKind.CONSULT_PERIOD,
                        PRIORITY_SCHEDULED,
                        now,
                        {"tenant_id": tenant.id, "period": period},
                    )
                except IngestionError as exc:
                    logger.error("could not enqueue %s for tenant %s: %s", period, tenant.id, exc)
                    continue
                enqueued.append(job)
        logger.info("discovery: %d tenants due, %d jobs queued", len(tenants), len(enqueued))
        return enqueued

    def cleanup_expired_credentials(self) -> int:
        removed = self._registry.cleanup_expired_credentials(self._clock())
        logger.info("credential cleanup removed %d entries", removed)
        return removed

    def purge_old_jobs(self) -> int:
        cutoff = self._clock() - self._retention
        removed = self._store.cleanup_older_than(cutoff)
        logger.info("job cleanup removed %d jobs finished before %s", removed, cutoff.isoformat())
        return removed

    def reap_stale_jobs(self) -> list[Job]:
        threshold = self._clock() - self._running_timeout
        requeued = self._store.requeue_stale(threshold)
        if requeued:
            logger.warning("requeued %d jobs running since before %s", len(requeued), threshold.isoformat())
        return requeued
