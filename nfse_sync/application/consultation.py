"""Consultation of a tenant period against the fiscal document API."""
from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Any

from nfse_sync.core.clock import Clock, utc_now
from nfse_sync.domain import DocumentKind, StoreResult, Tenant, TenantCredential
from nfse_sync.domain.errors import InvalidPayload, JobCancelled, TenantInactive
from nfse_sync.infrastructure import DocumentFetcher, TenantRegistry

from .storage import StorageOrganizer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ConsultationResult:
    period: str
    documents_found: int = 0
    stored: int = 0
    duplicates: int = 0
    versioned: int = 0
    skipped: int = 0
    keys: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    def record(self, outcome: StoreResult) -> None:
        if outcome.status == StoreResult.DUPLICATE:
            self.duplicates += 1
            return
        if outcome.status == StoreResult.VERSIONED:
            self.versioned += 1
        else:
            self.stored += 1
        self.keys.append(outcome.key)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class ConsultationService:
    """Fetches a period for a tenant and funnels every document through the organizer."""

    def __init__(
        self,
        registry: TenantRegistry,
        fetcher: DocumentFetcher,
        organizer: StorageOrganizer,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._registry = registry
        self._fetcher = fetcher
        self._organizer = organizer
        self._clock = clock

    def resolve_tenant(self, tenant_id: str) -> Tenant:
        tenant = self._registry.get_tenant(tenant_id)
        if not tenant.active:
            raise TenantInactive(f"tenant {tenant_id} is inactive")
        return tenant

    def resolve_credential(self, tenant: Tenant) -> TenantCredential:
        credential = self._registry.get_credential(tenant.id)
        if credential is None or not credential.active:
            raise TenantInactive(f"tenant {tenant.id} has no active API credential")
        if credential.is_expired(self._clock()):
            raise TenantInactive(f"API credential for tenant {tenant.id} expired")
        return credential

    def consult(
        self,
        tenant: Tenant,
        period: str,
        *,
        force_refresh: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> ConsultationResult:
        """Store the documents of ``period`` for ``tenant``.

        Numbers already present in storage are skipped unless
        ``force_refresh`` is set, in which case each one goes through the
        organizer's hash comparison and may produce a new version.
        A document the organizer cannot file, such as one whose number is
        not a safe path segment, is recorded in ``errors`` and the rest of
        the period is still stored.
        """

        self._organizer.period_prefix(tenant.external_id, period)
        credential = self.resolve_credential(tenant)
        documents = self._fetcher.fetch_documents(credential, period)
        result = ConsultationResult(period=period, documents_found=len(documents))

        existing: set[tuple[str, DocumentKind]] = set()
        if not force_refresh:
            existing = {
                (entry.number, entry.kind) for entry in self._organizer.list_documents(tenant.external_id, period)
            }

        for document in documents:
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelled(f"consultation of {period} for tenant {tenant.id} cancelled")
            if (document.number, document.kind) in existing:
                result.skipped += 1
                continue
            try:
                outcome = self._organizer.store(
                    tenant.external_id,
                    period,
                    document.number,
                    document.content,
                    kind=document.kind,
                    emission_date=document.emission_date,
                )
            except InvalidPayload as exc:
                logger.warning(
                    "tenant %s period %s: rejected document %r: %s", tenant.id, period, document.number, exc
                )
                result.errors.append({"number": document.number, "error": str(exc)})
                continue
            result.record(outcome)

        logger.info(
            "tenant %s period %s: %d found, %d stored, %d versioned, %d duplicates, %d skipped, %d rejected",
            tenant.id,
            period,
            result.documents_found,
            result.stored,
            result.versioned,
            result.duplicates,
            result.skipped,
            len(result.errors),
        )
        return result
