"""Time providers.

All timestamps in the ghost kitchen core are naive UTC datetimes, matching
what SQLite hands back from DateTime columns.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in naive UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FrozenClock:
    """Settable clock for tests and replays."""

    def __init__(self, current: datetime):
        self._current = current

    def now(self) -> datetime:
        return self._current

    def set(self, current: datetime) -> None:
        self._current = current

    def advance(self, **kwargs) -> datetime:
        """Move forward by a timedelta given as keyword arguments (minutes=5)."""
        self._current = self._current + timedelta(**kwargs)
        return self._current


system_clock = SystemClock()
