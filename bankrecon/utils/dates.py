from __future__ import annotations

from datetime import date, datetime, time, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: date | datetime) -> datetime:
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min)
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def days_between(a: date | datetime, b: date | datetime) -> float:
    """Absolute distance in fractional days."""
    return abs((as_naive_utc(a) - as_naive_utc(b)).total_seconds()) / 86400.0
