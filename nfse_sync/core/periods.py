from __future__ import annotations

import re
from datetime import date, datetime

PERIOD_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


def format_period(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def parse_period(period: str) -> tuple[int, int]:
    """Split a ``YYYY-MM`` competência into ``(year, month)``."""

    match = PERIOD_PATTERN.match(period or "")
    if not match:
        raise ValueError(f"invalid period: {period!r}")
    return int(match.group(1)), int(match.group(2))


def shift_period(period: str, months: int) -> str:
    year, month = parse_period(period)
    index = year * 12 + (month - 1) + months
    return format_period(index // 12, index % 12 + 1)


def period_of(moment: date | datetime) -> str:
    return format_period(moment.year, moment.month)
