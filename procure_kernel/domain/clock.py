"""
Injectable time source.

Services never call ``datetime.now()``; approval timestamps, reservation
ages and the month in a document number all come from a ``Clock``.
``SystemClock`` is used in production, ``DeterministicClock`` in tests and
by batch tasks that must see one fixed ``as_of`` for a whole run.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

_DEFAULT_START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Frozen clock that only moves when told to.

    Repeated ``now()`` calls return the same instant, so tests can assert
    exact timestamps and move across stale-reservation cutoffs with
    ``advance_days()``.
    """

    def __init__(self, start: datetime | None = None):
        start = start or _DEFAULT_START
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._current = start.astimezone(timezone.utc)

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: int = 1) -> datetime:
        self._current += timedelta(seconds=seconds)
        return self._current

    def advance_days(self, days: int) -> datetime:
        return self.advance(days * 86_400)
