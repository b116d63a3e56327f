"""Infrastructure layer for job persistence."""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Protocol

from nfse_sync.core.clock import Clock, utc_now
from nfse_sync.domain import DEFAULT_MAX_RETRIES, Job, JobKind, JobStatus, parse_params
from nfse_sync.domain import jobs as lifecycle
from nfse_sync.domain.errors import InvalidPayload, JobNotFound

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class JobStore(Protocol):
    """Persistence contract for the background job queue."""

    def enqueue(
        self,
        tenant_id: str,
        kind: JobKind | str,
        priority: int,
        not_before: datetime | None,
        payload: dict[str, Any],
        max_retries: int | None = None,
    ) -> Job: ...

    def get(self, job_id: str) -> Job: ...

    def claim_pending(self, limit: int) -> list[Job]: ...

    def complete(self, job_id: str, result: dict[str, Any] | None = None) -> Job: ...

    def fail(self, job_id: str, error_message: str) -> Job: ...

    def retry(self, job_id: str, retry_at: datetime) -> Job: ...

    def cancel(self, job_id: str) -> Job: ...

    def requeue_stale(self, started_before: datetime) -> list[Job]: ...

    def cleanup_older_than(self, cutoff: datetime) -> int: ...

    def list_jobs(
        self,
        *,
        tenant_id: str | None = None,
        status: JobStatus | str | None = None,
        kind: JobKind | str | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[Job], int]: ...


def clamp_page(page: int, per_page: int) -> tuple[int, int]:
    return max(1, int(page)), max(1, min(int(per_page), MAX_PAGE_SIZE))


def coerce_filters(
    status: JobStatus | str | None, kind: JobKind | str | None
) -> tuple[JobStatus | None, JobKind | None]:
    try:
        status_value = JobStatus(status) if status is not None else None
        kind_value = JobKind(kind) if kind is not None else None
    except ValueError as exc:
        raise InvalidPayload(str(exc)) from exc
    return status_value, kind_value


class InMemoryJobStore:
    """Lock-guarded in-memory queue used by tests and single-process runs."""

    def __init__(self, *, clock: Clock = utc_now, default_max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        self._clock = clock
        self._default_max_retries = default_max_retries
        self._jobs: dict[str, Job] = {}
        self._sequence = 0
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------
    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"job {job_id} not found")
        return job

    def _find_active(self, tenant_id: str, kind: JobKind, unit_key: str) -> Job | None:
        for job in self._jobs.values():
            if (
                job.tenant_id == tenant_id
                and job.kind == kind
                and job.unit_key == unit_key
                and job.status in lifecycle.ACTIVE_STATUSES
            ):
                return job
        return None

    # ------------------------------------------------------------------
    # queue operations
    # ------------------------------------------------------------------
    def enqueue(
        self,
        tenant_id: str,
        kind: JobKind | str,
        priority: int,
        not_before: datetime | None,
        payload: dict[str, Any],
        max_retries: int | None = None,
    ) -> Job:
        params = parse_params(kind, tenant_id, payload)
        job_kind = JobKind(kind)
        with self._lock:
            now = self._clock()
            existing = self._find_active(tenant_id, job_kind, params.unit_key())
            if existing is not None:
                merged = lifecycle.merge_request(existing, params, priority, now)
                if merged is not existing:
                    self._jobs[existing.id] = merged
                    logger.info("job %s upgraded by a repeated request (priority %d)", merged.id, merged.priority)
                else:
                    logger.debug("job %s already queued for %s/%s", existing.id, tenant_id, existing.unit_key)
                return merged.model_copy(deep=True)
            self._sequence += 1
            job = lifecycle.new_job(
                sequence=self._sequence,
                tenant_id=tenant_id,
                kind=job_kind,
                params=params,
                priority=priority,
                not_before=not_before or now,
                max_retries=self._default_max_retries if max_retries is None else max_retries,
                now=now,
            )
            self._jobs[job.id] = job
            logger.info("enqueued %s job %s for tenant %s (%s)", job.kind.value, job.id, tenant_id, job.unit_key)
            return job.model_copy(deep=True)

    def get(self, job_id: str) -> Job:
        with self._lock:
            return self._require(job_id).model_copy(deep=True)

    def claim_pending(self, limit: int) -> list[Job]:
        if limit <= 0:
            return []
        with self._lock:
            now = self._clock()
            due = [
                job
                for job in self._jobs.values()
                if job.status == JobStatus.PENDING and job.scheduled_at <= now
            ]
            due.sort(key=lifecycle.claim_order)
            claimed: list[Job] = []
            for job in due[:limit]:
                running = lifecycle.start(job, now)
                self._jobs[job.id] = running
                claimed.append(running.model_copy(deep=True))
            return claimed

    def _apply(self, job_id: str, transition, *args: Any) -> Job:
        with self._lock:
            job = self._require(job_id)
            updated = transition(job, *args, self._clock())
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    def complete(self, job_id: str, result: dict[str, Any] | None = None) -> Job:
        return self._apply(job_id, lifecycle.complete, result)

    def fail(self, job_id: str, error_message: str) -> Job:
        return self._apply(job_id, lifecycle.fail, error_message)

    def retry(self, job_id: str, retry_at: datetime) -> Job:
        return self._apply(job_id, lifecycle.retry, retry_at)

    def cancel(self, job_id: str) -> Job:
        return self._apply(job_id, lifecycle.cancel)

    def requeue_stale(self, started_before: datetime) -> list[Job]:
        with self._lock:
            now = self._clock()
            requeued: list[Job] = []
            for job in list(self._jobs.values()):
                if job.status != JobStatus.RUNNING or job.started_at is None:
                    continue
                if job.started_at < started_before:
                    updated = lifecycle.requeue(job, now)
                    self._jobs[job.id] = updated
                    requeued.append(updated.model_copy(deep=True))
            return requeued

    def cleanup_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status in lifecycle.FINISHED_STATUSES
                and job.completed_at is not None
                and job.completed_at < cutoff
            ]
            for job_id in stale:
                del self._jobs[job_id]
            return len(stale)

    def list_jobs(
        self,
        *,
        tenant_id: str | None = None,
        status: JobStatus | str | None = None,
        kind: JobKind | str | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[Job], int]:
        page, per_page = clamp_page(page, per_page)
        status_value, kind_value = coerce_filters(status, kind)
        with self._lock:
            matches = [
                job
                for job in self._jobs.values()
                if (tenant_id is None or job.tenant_id == tenant_id)
                and (status_value is None or job.status == status_value)
                and (kind_value is None or job.kind == kind_value)
            ]
            matches.sort(key=lifecycle.claim_order)
            start = (page - 1) * per_page
            items = [job.model_copy(deep=True) for job in matches[start : start + per_page]]
            return items, len(matches)

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()
            self._sequence = 0
