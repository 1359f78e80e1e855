"""Naive-UTC time helpers.

Every timestamp stored by the roster is a naive datetime in UTC. These
wrappers avoid the deprecated ``datetime.utcnow()`` family while keeping
that convention.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utcfromtimestamp(ts: float) -> datetime:
    """Convert a POSIX timestamp to a naive UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Drop tzinfo after converting aware datetimes to UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def format_iso_utc_z(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_naive_utc(value).isoformat() + "Z"
