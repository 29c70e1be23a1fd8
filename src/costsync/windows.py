"""Aggregation window boundaries and cache TTLs per dimension.

- total: all time, cached without expiry
- daily: natural day (local midnight to now), expires at next local midnight
- weekly: natural week starting Monday 00:00 local, expires next Monday
- monthly: natural month starting on the 1st 00:00 local, expires next 1st
- 5h: rolling window (now - 5h to now), expires 5h after the last write

Natural windows use the configured timezone so the ledger and the cache
agree on where a day, week or month begins. All returned datetimes are UTC.
"""

import math
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from costsync.models import Dimension

FIVE_HOUR_WINDOW = timedelta(hours=5)


def _local_midnight(day: date, tz: ZoneInfo) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=tz)


def _next_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def window_start(dimension: Dimension, now: datetime, tz: ZoneInfo) -> datetime | None:
    """Return the UTC start of the window containing ``now``, or None for all time."""
    if dimension is Dimension.TOTAL:
        return None
    if dimension is Dimension.FIVE_HOUR:
        return (now - FIVE_HOUR_WINDOW).astimezone(timezone.utc)

    today = now.astimezone(tz).date()
    if dimension is Dimension.DAILY:
        start = _local_midnight(today, tz)
    elif dimension is Dimension.WEEKLY:
        start = _local_midnight(today - timedelta(days=today.weekday()), tz)
    else:
        start = _local_midnight(today.replace(day=1), tz)
    return start.astimezone(timezone.utc)


def window_end(dimension: Dimension, now: datetime, tz: ZoneInfo) -> datetime | None:
    """Return the UTC instant the current window resets, or None if it never does."""
    if dimension is Dimension.TOTAL:
        return None
    if dimension is Dimension.FIVE_HOUR:
        return (now + FIVE_HOUR_WINDOW).astimezone(timezone.utc)

    today = now.astimezone(tz).date()
    if dimension is Dimension.DAILY:
        end = _local_midnight(today + timedelta(days=1), tz)
    elif dimension is Dimension.WEEKLY:
        end = _local_midnight(today + timedelta(days=7 - today.weekday()), tz)
    else:
        end = _local_midnight(_next_month(today), tz)
    return end.astimezone(timezone.utc)


def ttl_seconds(dimension: Dimension, now: datetime, tz: ZoneInfo) -> int | None:
    """Seconds until the cached value for ``dimension`` should expire.

    None means no expiry (total). Always at least 1 otherwise.
    """
    end = window_end(dimension, now, tz)
    if end is None:
        return None
    return max(1, math.ceil((end - now).total_seconds()))


def utc_now() -> datetime:
    """Default clock for components that accept an injectable ``clock``."""
    return datetime.now(timezone.utc)
