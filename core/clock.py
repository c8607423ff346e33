"""
core/clock.py -- UTC time helpers shared by the auth services and stores.

Every timestamp in EstateHub is timezone-aware UTC. Persisted timestamps are
ISO 8601 strings with a fixed microsecond precision so that string comparison
in SQL matches chronological order (isoformat() drops the fraction when it is
zero, which would break lexicographic ordering).

Services accept a `clock` callable instead of calling utcnow() directly so
tests can move time forward without sleeping.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize an aware datetime for storage."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
