"""Utilities for working with timestamps, calendar days and buckets in UTC."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional, Tuple


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def at_time(day: date, value: time) -> datetime:
    """Combine ``day`` and a wall-clock ``value`` into a UTC ``datetime``."""

    return datetime.combine(day, value).replace(tzinfo=timezone.utc)


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """Return the half-open ``[start, end)`` UTC interval covering ``day``."""

    start = at_time(day, time(0, 0))
    return start, start + timedelta(days=1)


def parse_hhmm(value: str) -> time:
    """Parse ``"HH:MM"`` into a :class:`datetime.time`."""

    hour_text, _, minute_text = value.strip().partition(":")
    return time(int(hour_text), int(minute_text or 0))


def minutes_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60.0


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield every calendar day from ``start`` to ``end`` inclusive."""

    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def iso_week_start(day: date) -> date:
    """Return the Monday opening the ISO week that contains ``day``."""

    return day - timedelta(days=day.isoweekday() - 1)


def month_start(day: date) -> date:
    return day.replace(day=1)


def add_months(day: date, months: int) -> date:
    """Shift the first-of-month ``day`` by ``months`` calendar months."""

    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def bucket_start(day: date, period: str) -> date:
    """Align ``day`` to the start of its ``period`` bucket (day/week/month)."""

    if period == "day":
        return day
    if period == "week":
        return iso_week_start(day)
    if period == "month":
        return month_start(day)
    raise ValueError(f"Unsupported period {period!r}")


def bucket_end(start: date, period: str) -> date:
    """Return the last calendar day of the bucket opened by ``start``."""

    if period == "day":
        return start
    if period == "week":
        return start + timedelta(days=6)
    if period == "month":
        return add_months(start, 1) - timedelta(days=1)
    raise ValueError(f"Unsupported period {period!r}")


def previous_bucket(start: date, period: str) -> date:
    if period == "day":
        return start - timedelta(days=1)
    if period == "week":
        return start - timedelta(days=7)
    if period == "month":
        return add_months(start, -1)
    raise ValueError(f"Unsupported period {period!r}")


def days_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 86400.0


def coerce_datetime(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(value)


__all__ = [
    "utc_now",
    "ensure_utc",
    "at_time",
    "day_bounds",
    "parse_hhmm",
    "minutes_between",
    "iter_days",
    "iso_week_start",
    "month_start",
    "add_months",
    "bucket_start",
    "bucket_end",
    "previous_bucket",
    "days_between",
    "coerce_datetime",
]
