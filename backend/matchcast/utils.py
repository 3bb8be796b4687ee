"""
backend/matchcast/utils.py

Purpose:
    Clock helpers shared by the event model, the store and the consumer
    runtime. Every timestamp matchcast writes or compares is tz-aware UTC.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def elapsed_ms(since: datetime) -> int:
    """Whole milliseconds from ``since`` to now, never negative (clock skew)."""
    return max(0, int((utcnow() - ensure_utc(since)).total_seconds() * 1000))
