"""Application service behind the job and tenant HTTP endpoints."""
from __future__ import annotations

import logging
from typing import Any, Callable

from nfse_sync.core.clock import Clock, utc_now
from nfse_sync.domain import (
    PRIORITY_MANUAL,
    PRIORITY_REPORT,
    Job,
    JobKind,
    JobStatus,
    StoredDocument,
)
from nfse_sync.infrastructure import JobStore, TenantRegistry

from .storage import StorageOrganizer

logger = logging.getLogger(__name__)


class JobService:
    """Coordinates manual job requests and job inspection."""

    def __init__(
        self,
        store: JobStore,
        registry: TenantRegistry,
        organizer: StorageOrganizer,
        *,
        clock: Clock = utc_now,
        on_cancel: Callable[[str], None] | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._organizer = organizer
        self._clock = clock
        self._on_cancel = on_cancel

    def list_jobs(
        self,
        *,
        tenant_id: str | None = None,
        status: JobStatus | str | None = None,
        kind: JobKind | str | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[Job], int]:
        return self._store.list_jobs(tenant_id=tenant_id, status=status, kind=kind, page=page, per_page=per_page)

    def get_job(self, job_id: str) -> Job:
        return self._store.get(job_id)

    def cancel_job(self, job_id: str) -> Job:
        job = self._store.cancel(job_id)
        if self._on_cancel is not None:
            self._on_cancel(job.id)
        logger.info("job %s cancelled on request", job.id)
        return job

    def retry_job(self, job_id: str) -> Job:
        """Put a failed job back in the queue right away, consuming one retry."""

        job = self._store.retry(job_id, self._clock())
        logger.info("job %s requeued manually (retry %d/%d)", job.id, job.retry_count, job.max_retries)
        return job

    def request_sync(self, tenant_id: str, *, period: str | None = None, force_refresh: bool = False) -> Job:
        self._registry.get_tenant(tenant_id)
        payload: dict[str, Any] = {"tenant_id": tenant_id, "force_refresh": force_refresh}
        if period:
            payload["period"] = period
        return self._store.enqueue(tenant_id, JobKind.SYNC_DOCUMENTS, PRIORITY_MANUAL, None, payload)

    def request_report(
        self, tenant_id: str, *, period: str, fmt: str = "csv", batch_id: str | None = None
    ) -> Job:
        self._registry.get_tenant(tenant_id)
        payload: dict[str, Any] = {"tenant_id": tenant_id, "period": period, "format": fmt}
        if batch_id:
            payload["batch_id"] = batch_id
        return self._store.enqueue(tenant_id, JobKind.GENERATE_REPORT, PRIORITY_REPORT, None, payload)

    def request_processing(self, tenant_id: str, *, period: str, document_number: str) -> Job:
        self._registry.get_tenant(tenant_id)
        payload = {"tenant_id": tenant_id, "period": period, "document_number": document_number}
        return self._store.enqueue(tenant_id, JobKind.PROCESS_DOCUMENT, PRIORITY_MANUAL, None, payload)

    def list_documents(self, tenant_id: str, period: str) -> list[StoredDocument]:
        tenant = self._registry.get_tenant(tenant_id)
        return self._organizer.list_documents(tenant.external_id, period)


_service: JobService | None = None


def configure_job_service(service: JobService | None) -> None:
    """Install the service used by the HTTP routes."""

    global _service
    _service = service


def get_job_service() -> JobService:
    """Return the configured job service."""

    if _service is None:
        raise RuntimeError("job service not configured; call configure_job_service first")
    return _service
