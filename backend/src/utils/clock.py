"""
Timezone-aware time helpers.

All persisted timestamps are UTC-aware. SQLite drops tzinfo on round trip,
so values read back are normalized through ensure_utc().
"""

from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


# Stands in for "forever" when comparing permanent mutes
FAR_FUTURE = datetime(9999, 12, 31, 23, 59, 59, tzinfo=timezone.utc)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    Naive values are assumed to already be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_zone(tz_name: str) -> ZoneInfo:
    """Look up a zone by name, falling back to UTC for unknown names."""
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def next_morning(reference: datetime, tz_name: str = "UTC", hour: int = 9) -> datetime:
    """
    Resolve "tomorrow morning" relative to a reference time.

    Args:
        reference: Aware datetime the request was made at
        tz_name: IANA zone the wall-clock hour is interpreted in
        hour: Local hour of the resume time

    Returns:
        Aware UTC datetime of the next calendar day at ``hour`` local time

    Example:
        >>> next_morning(datetime(2026, 3, 1, 22, 0, tzinfo=timezone.utc))
        datetime.datetime(2026, 3, 2, 9, 0, tzinfo=datetime.timezone.utc)
    """
    zone = resolve_zone(tz_name)
    local = ensure_utc(reference).astimezone(zone)
    target_date = local.date() + timedelta(days=1)
    target = datetime.combine(target_date, time(hour=hour), tzinfo=zone)
    return target.astimezone(timezone.utc)
