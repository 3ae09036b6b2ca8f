"""
Single injectable time source.

All deadline comparisons go through a Clock so tests can move time without
waiting. Timestamps are naive UTC, matching the database columns.
"""
from datetime import datetime, timedelta, timezone


class Clock:
    """Wall clock in naive UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FrozenClock(Clock):
    """Manually advanced clock for tests and dry runs."""

    def __init__(self, start: datetime):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        """Advance by timedelta keyword arguments (days=3, hours=1, ...)."""
        self._now = self._now + timedelta(**kwargs)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value


system_clock = Clock()
