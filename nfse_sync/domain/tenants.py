"""Tenant entities consumed by the sync scheduler."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

DEFAULT_SYNC_INTERVAL_HOURS = 24


@dataclass(slots=True)
class Tenant:
    """A company whose fiscal documents are ingested independently."""

    id: str
    external_id: str
    name: str
    active: bool = True
    auto_sync: bool = True
    sync_interval_hours: int = DEFAULT_SYNC_INTERVAL_HOURS
    last_sync: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        if not self.active or not self.auto_sync:
            return False
        if self.last_sync is None:
            return True
        return now > self.last_sync + timedelta(hours=self.sync_interval_hours)


@dataclass(slots=True)
class TenantCredential:
    """API token used to consult the fiscal document service for a tenant."""

    tenant_id: str
    api_token: str
    api_endpoint: str | None = None
    expires_at: datetime | None = None
    active: bool = True

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now
