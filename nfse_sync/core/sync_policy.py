"""Selection of the competências a tenant sync must consult."""
from __future__ import annotations

from datetime import datetime

from nfse_sync.core.periods import period_of, shift_period
from nfse_sync.domain import Tenant

LATE_ISSUE_DAY_LIMIT = 5
BACKFILL_MONTHS = 3


def periods_to_consult(tenant: Tenant, now: datetime) -> list[str]:
    """Return the periods to consult for ``tenant`` at ``now``.

    The current period always comes first. During the first days of a month
    documents may still be issued against the previous competência, so that
    period is added too. A tenant that never synced also backfills the three
    periods before the current one.
    """

    current = period_of(now)
    periods = [current]

    if now.day <= LATE_ISSUE_DAY_LIMIT:
        periods.append(shift_period(current, -1))

    if tenant.last_sync is None:
        for offset in range(1, BACKFILL_MONTHS + 1):
            candidate = shift_period(current, -offset)
            if candidate not in periods:
                periods.append(candidate)

    return periods
