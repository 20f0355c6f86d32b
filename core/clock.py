"""
Clock abstraction for testable scheduling logic.

Production code uses SystemClock (the default). Tests inject MockClock to
control time without sleeping.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Clock(Protocol):
    """Abstract wall clock used by the scheduler, engine and registry."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Production clock returning the current UTC time."""

    def now(self) -> datetime:
        return utcnow()


class MockClock:
    """
    Controllable clock for deterministic testing.

    Example:
        clock = MockClock(datetime(2024, 1, 15, tzinfo=timezone.utc))
        clock.advance(minutes=5)
    """

    def __init__(self, start: datetime):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, **delta) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value
