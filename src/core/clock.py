"""Time sources.

Persisted timestamps are naive UTC datetimes so SQLite round-trips compare
consistently with values created in-process.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class FixedClock:
    """Manually advanced clock for deterministic staleness and duration tests."""

    def __init__(self, start: datetime) -> None:
        self._now = as_naive_utc(start)

    def __call__(self) -> datetime:
        return self._now

    def advance(self, **delta: float) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = as_naive_utc(value)
