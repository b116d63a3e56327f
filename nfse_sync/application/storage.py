"""Deterministic object keys, dedup and versioning for fiscal documents."""
from __future__ import annotations

import json
import logging
import re
import threading
from datetime import date

from nfse_sync.core.clock import Clock, utc_now
from nfse_sync.core.hashing import sha256_bytes
from nfse_sync.core.periods import parse_period
from nfse_sync.domain import DocumentKind, StoredDocument, StoredObject, StoreResult, content_type_for
from nfse_sync.domain.errors import DocumentNotFound, InvalidPayload
from nfse_sync.infrastructure import ObjectStore

logger = logging.getLogger(__name__)

REPORT_FORMATS = {"csv", "xlsx", "txt"}

_SEGMENT = re.compile(r"^[A-Za-z0-9.-]+$")
_BATCH = re.compile(r"^[A-Za-z0-9_-]+$")
_DOCUMENT_NAME = re.compile(
    r"^nfse_(?P<number>[A-Za-z0-9.-]+)_(?P<date>\d{8})(?:_v(?P<version>\d+))?\.(?P<ext>xml|zip)$"
)


def _segment(value: str, label: str, pattern: re.Pattern[str] = _SEGMENT) -> str:
    cleaned = str(value or "").strip()
    if not pattern.match(cleaned) or cleaned in {".", ".."}:
        raise InvalidPayload(f"invalid {label}: {value!r}")
    return cleaned


def parse_document_key(key: str) -> StoredDocument | None:
    """Decode ``key`` back into number, emission date and version, if it is a document key."""

    parts = key.split("/")
    if len(parts) < 2:
        return None
    match = _DOCUMENT_NAME.match(parts[-1])
    if not match or parts[-2] != match.group("ext"):
        return None
    raw = match.group("date")
    try:
        emitted = date(int(raw[:4]), int(raw[4:6]), int(raw[6:]))
    except ValueError:
        return None
    return StoredDocument(
        key=key,
        number=match.group("number"),
        emission_date=emitted,
        kind=DocumentKind(match.group("ext")),
        version=int(match.group("version") or 1),
    )


class StorageOrganizer:
    """Lays out tenant documents as ``tenant/year/month/tenant/kind/nfse_{number}_{yyyymmdd}.{ext}``."""

    def __init__(self, objects: ObjectStore, *, clock: Clock = utc_now) -> None:
        self._objects = objects
        self._clock = clock
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # key construction
    # ------------------------------------------------------------------
    @staticmethod
    def period_prefix(tenant: str, period: str) -> str:
        tenant = _segment(tenant, "tenant")
        try:
            year, month = parse_period(period)
        except ValueError as exc:
            raise InvalidPayload(str(exc)) from exc
        return f"{tenant}/{year:04d}/{month:02d}/"

    def kind_prefix(self, tenant: str, period: str, kind: DocumentKind | str) -> str:
        tenant = _segment(tenant, "tenant")
        kind = DocumentKind(kind)
        return f"{self.period_prefix(tenant, period)}{tenant}/{kind.value}/"

    def build_path(
        self,
        tenant_external_id: str,
        period: str,
        document_number: str,
        emission_date: date,
        kind: DocumentKind | str = DocumentKind.XML,
        *,
        version: int = 1,
    ) -> str:
        kind = DocumentKind(kind)
        number = _segment(document_number, "document number")
        suffix = f"_v{version}" if version > 1 else ""
        name = f"nfse_{number}_{emission_date:%Y%m%d}{suffix}.{kind.value}"
        return f"{self.kind_prefix(tenant_external_id, period, kind)}{name}"

    @staticmethod
    def build_report_path(tenant_external_id: str, batch_id: str, fmt: str = "txt") -> str:
        tenant = _segment(tenant_external_id, "tenant")
        batch = _segment(batch_id, "batch id", _BATCH)
        if fmt not in REPORT_FORMATS:
            raise InvalidPayload(f"unsupported report format: {fmt!r}")
        return f"{tenant}/reports/processing_report_{batch}.{fmt}"

    def _audit_path(self, tenant: str, period: str, number: str, version: int) -> str:
        tenant = _segment(tenant, "tenant")
        return f"{self.period_prefix(tenant, period)}{tenant}/audit/nfse_{number}_v{version}.json"

    # ------------------------------------------------------------------
    # lookup
    # ------------------------------------------------------------------
    def _versions(self, tenant: str, period: str, number: str, kind: DocumentKind) -> list[StoredDocument]:
        number = _segment(number, "document number")
        token = f"nfse_{number}_"
        versions = []
        for item in self._objects.list(self.kind_prefix(tenant, period, kind)):
            name = item.key.rsplit("/", 1)[-1]
            if not name.startswith(token):
                continue
            parsed = parse_document_key(item.key)
            if parsed is not None and parsed.number == number:
                versions.append(parsed)
        versions.sort(key=lambda entry: (entry.version, entry.key))
        return versions

    def current_key(
        self, tenant: str, period: str, number: str, kind: DocumentKind | str = DocumentKind.XML
    ) -> str | None:
        versions = self._versions(tenant, period, number, DocumentKind(kind))
        return versions[-1].key if versions else None

    def fetch(
        self,
        tenant_external_id: str,
        period: str,
        document_number: str,
        kind: DocumentKind | str = DocumentKind.XML,
    ) -> bytes:
        key = self.current_key(tenant_external_id, period, document_number, kind)
        if key is None:
            raise DocumentNotFound(
                f"document {document_number} not found for {tenant_external_id} in {period}"
            )
        return self._objects.get(key)

    def list(self, tenant_external_id: str, period: str) -> list[StoredObject]:
        return self._objects.list(self.period_prefix(tenant_external_id, period))

    def list_documents(
        self,
        tenant_external_id: str,
        period: str,
        kind: DocumentKind | str | None = None,
        *,
        current_only: bool = True,
    ) -> list[StoredDocument]:
        kinds = [DocumentKind(kind)] if kind is not None else list(DocumentKind)
        documents: list[StoredDocument] = []
        for item_kind in kinds:
            for item in self._objects.list(self.kind_prefix(tenant_external_id, period, item_kind)):
                parsed = parse_document_key(item.key)
                if parsed is not None:
                    documents.append(parsed)
        if current_only:
            latest: dict[tuple[str, DocumentKind], StoredDocument] = {}
            for entry in documents:
                slot = (entry.number, entry.kind)
                if slot not in latest or entry.version > latest[slot].version:
                    latest[slot] = entry
            documents = list(latest.values())
        return sorted(documents, key=lambda entry: (entry.kind.value, entry.number, entry.version))

    def existing_numbers(
        self, tenant_external_id: str, period: str, kind: DocumentKind | str | None = None
    ) -> set[str]:
        return {entry.number for entry in self.list_documents(tenant_external_id, period, kind)}

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def store(
        self,
        tenant_external_id: str,
        period: str,
        document_number: str,
        data: bytes,
        kind: DocumentKind | str = DocumentKind.XML,
        emission_date: date | None = None,
    ) -> StoreResult:
        """Write ``data`` unless the current version already holds the same bytes.

        Changed content for an existing number is written as the next
        ``_v{n}`` version; the previous key is kept and an audit record
        describing the replacement is stored next to the period.
        """

        kind = DocumentKind(kind)
        emitted = emission_date or self._clock().date()
        digest = sha256_bytes(data)

        with self._lock:
            versions = self._versions(tenant_external_id, period, document_number, kind)
            if not versions:
                key = self.build_path(tenant_external_id, period, document_number, emitted, kind)
                self._objects.put(key, data, kind.content_type)
                logger.debug("stored %s", key)
                return StoreResult(key=key, status=StoreResult.CREATED, sha256=digest)

            current = versions[-1]
            current_digest = sha256_bytes(self._objects.get(current.key))
            if current_digest == digest:
                return StoreResult(key=current.key, status=StoreResult.DUPLICATE, sha256=digest)

            version = current.version + 1
            key = self.build_path(tenant_external_id, period, document_number, emitted, kind, version=version)
            self._objects.put(key, data, kind.content_type)
            audit = {
                "document_number": current.number,
                "period": period,
                "kind": kind.value,
                "version": version,
                "key": key,
                "sha256": digest,
                "superseded_key": current.key,
                "superseded_sha256": current_digest,
                "recorded_at": self._clock().isoformat(),
            }
            audit_key = self._audit_path(tenant_external_id, period, current.number, version)
            self._objects.put(audit_key, json.dumps(audit, indent=2).encode("utf-8"), content_type_for(audit_key))
            logger.info("document %s changed, stored version %d at %s", current.number, version, key)
            return StoreResult(key=key, status=StoreResult.VERSIONED, sha256=digest, superseded_key=current.key)

    def delete(
        self,
        tenant_external_id: str,
        period: str,
        document_number: str,
        kind: DocumentKind | str = DocumentKind.XML,
    ) -> int:
        with self._lock:
            versions = self._versions(tenant_external_id, period, document_number, DocumentKind(kind))
            for entry in versions:
                self._objects.delete(entry.key)
        return len(versions)

    # ------------------------------------------------------------------
    # reports
    # ------------------------------------------------------------------
    def store_report(self, tenant_external_id: str, batch_id: str, data: bytes, fmt: str = "txt") -> StoredObject:
        key = self.build_report_path(tenant_external_id, batch_id, fmt)
        return self._objects.put(key, data, content_type_for(key))

    def fetch_report(self, tenant_external_id: str, batch_id: str, fmt: str = "txt") -> bytes:
        key = self.build_report_path(tenant_external_id, batch_id, fmt)
        if not self._objects.exists(key):
            raise DocumentNotFound(f"report {batch_id}.{fmt} not found for {tenant_external_id}")
        return self._objects.get(key)
