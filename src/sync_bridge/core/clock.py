"""Time helpers shared by the queue, the entity map and the breaker."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current UTC time."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """
    Serialize a timestamp for storage.

    Fixed-width UTC strings compare in the same order as the instants
    they represent, so SQL can filter and sort on them directly.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    """Parse a timestamp written by ``to_iso``."""
    return datetime.fromisoformat(value)
