from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterable


def utc_day(value: datetime) -> date:
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(timezone.utc).date()


def day_range(*, range_days: int, end: date) -> list[date]:
    # Oldest first, ending on (and including) ``end``.
    days = max(1, int(range_days))
    start = end - timedelta(days=days - 1)
    return [start + timedelta(days=offset) for offset in range(days)]


def build_day_points(
    days: Iterable[date],
    *,
    build: Callable[[date], dict[str, Any]],
) -> list[dict[str, Any]]:
    """Emit one point per day, even for days without data."""
    return [{"date": day.isoformat(), **build(day)} for day in days]
