"""Job handlers, one per job kind."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, cast

from nfse_sync.core.clock import Clock, utc_now
from nfse_sync.core.hashing import sha256_bytes
from nfse_sync.core.sync_policy import periods_to_consult
from nfse_sync.domain import (
    ConsultPeriodParams,
    DocumentKind,
    GenerateReportParams,
    Job,
    JobKind,
    ProcessDocumentParams,
    SyncDocumentsParams,
)
from nfse_sync.domain.errors import ExternalFetchError, JobCancelled, StorageWriteError
from nfse_sync.infrastructure import TenantRegistry

from .consultation import ConsultationService
from .parser import parse_nfse
from .reports import build_report
from .storage import StorageOrganizer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobContext:
    """Per-execution state handed to a handler."""

    job: Job
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise JobCancelled(f"job {self.job.id} cancelled")


Handler = Callable[[Job, JobContext], dict[str, Any]]


class JobHandlers:
    """Binds the application services to the processor's dispatch table."""

    def __init__(
        self,
        registry: TenantRegistry,
        consultation: ConsultationService,
        organizer: StorageOrganizer,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._registry = registry
        self._consultation = consultation
        self._organizer = organizer
        self._clock = clock

    def mapping(self) -> dict[JobKind, Handler]:
        return {
            JobKind.SYNC_DOCUMENTS: self.sync_documents,
            JobKind.CONSULT_PERIOD: self.consult_period,
            JobKind.PROCESS_DOCUMENT: self.process_document,
            JobKind.GENERATE_REPORT: self.generate_report,
        }

    # ------------------------------------------------------------------
    # handlers
    # ------------------------------------------------------------------
    def consult_period(self, job: Job, context: JobContext) -> dict[str, Any]:
        params = cast(ConsultPeriodParams, job.params())
        tenant = self._consultation.resolve_tenant(params.tenant_id)
        result = self._consultation.consult(
            tenant,
            params.period,
            force_refresh=params.force_refresh,
            cancel_event=context.cancel_event,
        )
        self._registry.update_last_sync(tenant.id, self._clock())
        return result.as_dict()

    def sync_documents(self, job: Job, context: JobContext) -> dict[str, Any]:
        params = cast(SyncDocumentsParams, job.params())
        tenant = self._consultation.resolve_tenant(params.tenant_id)
        periods = [params.period] if params.period else periods_to_consult(tenant, self._clock())

        results: list[dict[str, Any]] = []
        failures: dict[str, str] = {}
        for period in periods:
            context.raise_if_cancelled()
            try:
                outcome = self._consultation.consult(
                    tenant,
                    period,
                    force_refresh=params.force_refresh,
                    cancel_event=context.cancel_event,
                )
            except (ExternalFetchError, StorageWriteError) as exc:
                logger.warning("sync of %s for tenant %s failed: %s", period, tenant.id, exc)
                failures[period] = str(exc)
                continue
            results.append(outcome.as_dict())

        if failures:
            summary = "; ".join(f"{period}: {message}" for period, message in failures.items())
            raise ExternalFetchError(f"{len(failures)} of {len(periods)} periods failed ({summary})")

        self._registry.update_last_sync(tenant.id, self._clock())
        return {
            "periods": periods,
            "documents_found": sum(item["documents_found"] for item in results),
            "stored": sum(item["stored"] for item in results),
            "versioned": sum(item["versioned"] for item in results),
            "duplicates": sum(item["duplicates"] for item in results),
            "skipped": sum(item["skipped"] for item in results),
            "rejected": sum(len(item["errors"]) for item in results),
            "details": results,
        }

    def process_document(self, job: Job, context: JobContext) -> dict[str, Any]:
        params = cast(ProcessDocumentParams, job.params())
        tenant = self._consultation.resolve_tenant(params.tenant_id)
        content = self._organizer.fetch(tenant.external_id, params.period, params.document_number, DocumentKind.XML)
        context.raise_if_cancelled()
        parsed = parse_nfse(content)
        data = parsed.as_dict()
        data["content_sha256"] = sha256_bytes(content)
        data["key"] = self._organizer.current_key(
            tenant.external_id, params.period, params.document_number, DocumentKind.XML
        )
        return data

    def generate_report(self, job: Job, context: JobContext) -> dict[str, Any]:
        params = cast(GenerateReportParams, job.params())
        tenant = self._consultation.resolve_tenant(params.tenant_id)
        batch_id = params.resolved_batch_id()
        payload, documents = build_report(
            self._organizer,
            tenant_external_id=tenant.external_id,
            period=params.period,
            batch_id=batch_id,
            fmt=params.format,
            generated_at=self._clock(),
        )
        context.raise_if_cancelled()
        stored = self._organizer.store_report(tenant.external_id, batch_id, payload, params.format)
        return {
            "key": stored.key,
            "format": params.format,
            "batch_id": batch_id,
            "documents": documents,
            "size": stored.size,
        }
