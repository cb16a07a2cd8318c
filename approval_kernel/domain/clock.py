"""
Injectable time source for the approval kernel.

Services receive a ``Clock`` instead of reading the system time, so that
delegation windows, ``decided_at`` stamps and history ordering can be
pinned in tests.  ``SystemClock`` is the only place that reads wall time.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Source of timezone-aware UTC timestamps."""

    @abstractmethod
    def now(self) -> datetime: ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    ``now()`` keeps returning the same instant until ``advance()`` or
    ``set()`` is called.  Naive datetimes are rejected so a test cannot
    accidentally compare local time against stored UTC.
    """

    def __init__(self, start: datetime | None = None):
        self._current = _require_aware(
            start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        )

    def now(self) -> datetime:
        return self._current

    def set(self, at: datetime) -> None:
        self._current = _require_aware(at)

    def advance(self, seconds: float = 1) -> datetime:
        """Move forward by ``seconds`` and return the new instant."""
        self._current += timedelta(seconds=seconds)
        return self._current


def _require_aware(at: datetime) -> datetime:
    if at.tzinfo is None:
        raise ValueError("DeterministicClock needs a timezone-aware datetime")
    return at.astimezone(timezone.utc)
