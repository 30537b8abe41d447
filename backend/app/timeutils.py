"""Timestamp helpers.

The server is the timestamp authority for its own store. Everything is kept
as timezone-aware UTC and serialized with fixed microsecond precision so that
string order in storage matches chronological order.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from dateutil.parser import isoparse

_TICK = timedelta(microseconds=1)


def utc_now() -> datetime:
    """Current server time (UTC, aware)."""
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    """Serialize for storage: ``YYYY-MM-DDTHH:MM:SS.ffffff+00:00``."""
    if dt is None:
        return None
    return to_utc(dt).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or datetime) into aware UTC.

    Raises:
        ValueError: if the value is present but not a valid timestamp.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if not isinstance(value, str):
        raise ValueError(f"Invalid timestamp: {value!r}")
    return to_utc(isoparse(value.strip()))


def advance_timestamp(previous: datetime | None, now: datetime | None = None) -> datetime:
    """Next ``updated_at`` for a row, never earlier than (or equal to) ``previous``."""
    now = now or utc_now()
    if previous is not None and now <= previous:
        return previous + _TICK
    return now
