"""
Injectable time source.

Services read time through a Clock, never ``datetime.now()``, so lot
receipt order, batch timestamps and the year in a transfer number are
reproducible under test.  Every value is timezone-aware UTC.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock:
    """
    Frozen clock for tests.

    Time stands still at ``start`` (noon UTC on 2025-01-01 by default)
    until ``advance`` moves it forward.
    """

    DEFAULT_START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __init__(self, start: datetime | None = None):
        start = start or self.DEFAULT_START
        if start.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware start")
        self._current = start.astimezone(timezone.utc)

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float = 1) -> datetime:
        if seconds < 0:
            raise ValueError("A clock cannot move backwards")
        self._current += timedelta(seconds=seconds)
        return self._current
