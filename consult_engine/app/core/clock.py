"""
Injectable clocks.

Every time-dependent operation takes a clock instead of reading the wall
clock directly. Timestamps are naive UTC, matching what the ORM persists.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock, naive UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FrozenClock:
    """Clock that only moves when told to. Used by tests and replay tooling."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or SystemClock().now()

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, **delta) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now


system_clock = SystemClock()


def get_clock() -> Clock:
    """FastAPI dependency returning the process clock."""
    return system_clock
