from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hours_between(start: datetime | None, end: datetime) -> float:
    if start is None:
        return 0.0
    return (end - start).total_seconds() / 3600.0


def minutes_between(start: datetime | None, end: datetime) -> float:
    if start is None:
        return 0.0
    return (end - start).total_seconds() / 60.0
