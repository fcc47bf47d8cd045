"""Shared utility functions used by models and services.

utc_now:   tz-aware "now", the default clock for every service
as_utc:    normalise SQLite naive datetimes to UTC-aware
new_uuid:  string primary keys for workflows and tasks
"""

import uuid
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as a UTC-aware datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    SQLite's DateTime columns return naive datetimes; PostgreSQL returns tz-aware.
    All comparisons against the clock must go through this helper so the same
    code works in both environments.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat(dt: datetime | None) -> str | None:
    """ISO-8601 string for a (possibly naive) UTC datetime, or None."""
    dt = as_utc(dt)
    return dt.isoformat() if dt else None


def new_uuid() -> str:
    return str(uuid.uuid4())
