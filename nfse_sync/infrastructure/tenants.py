"""Tenant registry adapters."""
from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import yaml

from nfse_sync.domain import Tenant, TenantCredential
from nfse_sync.domain.errors import TenantNotFound

logger = logging.getLogger(__name__)


class TenantRegistry(Protocol):
    """Read side of company management plus the last-sync write-back."""

    def get_active_tenants_due_for_sync(self, now: datetime) -> list[Tenant]: ...

    def update_last_sync(self, tenant_id: str, ts: datetime) -> None: ...

    def get_tenant(self, tenant_id: str) -> Tenant: ...

    def get_credential(self, tenant_id: str) -> TenantCredential | None: ...

    def cleanup_expired_credentials(self, now: datetime) -> int: ...

    def list_tenants(self) -> list[Tenant]: ...


def _as_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class InMemoryTenantRegistry:
    """Registry kept in memory, optionally seeded from a YAML file."""

    def __init__(self) -> None:
        self._tenants: dict[str, Tenant] = {}
        self._credentials: dict[str, TenantCredential] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_yaml(cls, path: str | Path) -> "InMemoryTenantRegistry":
        with Path(path).open("r", encoding="utf-8") as fp:
            document = yaml.safe_load(fp) or {}
        registry = cls()
        for entry in document.get("tenants", []) or []:
            tenant = Tenant(
                id=str(entry["id"]),
                external_id=str(entry.get("external_id") or entry["id"]),
                name=str(entry.get("name") or entry["id"]),
                active=bool(entry.get("active", True)),
                auto_sync=bool(entry.get("auto_sync", True)),
                sync_interval_hours=int(entry.get("sync_interval_hours", 24)),
                last_sync=_as_datetime(entry.get("last_sync")),
            )
            registry.add_tenant(tenant)
            credential = entry.get("credential")
            if credential:
                registry.add_credential(
                    TenantCredential(
                        tenant_id=tenant.id,
                        api_token=str(credential["api_token"]),
                        api_endpoint=credential.get("api_endpoint"),
                        expires_at=_as_datetime(credential.get("expires_at")),
                        active=bool(credential.get("active", True)),
                    )
                )
        logger.info("loaded %d tenants from %s", len(registry._tenants), path)
        return registry

    def add_tenant(self, tenant: Tenant) -> None:
        with self._lock:
            self._tenants[tenant.id] = replace(tenant)

    def add_credential(self, credential: TenantCredential) -> None:
        with self._lock:
            self._credentials[credential.tenant_id] = replace(credential)

    def list_tenants(self) -> list[Tenant]:
        with self._lock:
            return [replace(tenant) for tenant in self._tenants.values()]

    def get_tenant(self, tenant_id: str) -> Tenant:
        with self._lock:
            tenant = self._tenants.get(tenant_id)
            if tenant is None:
                raise TenantNotFound(f"tenant {tenant_id} not found")
            return replace(tenant)

    def get_credential(self, tenant_id: str) -> TenantCredential | None:
        with self._lock:
            credential = self._credentials.get(tenant_id)
            return replace(credential) if credential is not None else None

    def get_active_tenants_due_for_sync(self, now: datetime) -> list[Tenant]:
        with self._lock:
            due = [replace(tenant) for tenant in self._tenants.values() if tenant.is_due(now)]
        return sorted(due, key=lambda tenant: tenant.id)

    def update_last_sync(self, tenant_id: str, ts: datetime) -> None:
        with self._lock:
            tenant = self._tenants.get(tenant_id)
            if tenant is None:
                raise TenantNotFound(f"tenant {tenant_id} not found")
            tenant.last_sync = ts

    def cleanup_expired_credentials(self, now: datetime) -> int:
        with self._lock:
            expired = [
                tenant_id
                for tenant_id, credential in self._credentials.items()
                if credential.is_expired(now)
            ]
            for tenant_id in expired:
                del self._credentials[tenant_id]
        if expired:
            logger.info("removed %d expired credentials", len(expired))
        return len(expired)
