from __future__ import annotations

from datetime import timedelta
from typing import Protocol, Sequence

DEFAULT_BACKOFF_SCHEDULE: tuple[timedelta, ...] = (
    timedelta(minutes=5),
    timedelta(minutes=30),
    timedelta(hours=2),
    timedelta(hours=6),
)


class BackoffPolicy(Protocol):
    def delay_for(self, attempts: int, *, channel: str | None = None, template: str | None = None) -> timedelta: ...


class FixedScheduleBackoff:
    """Delay indexed by the attempt count, holding at the last entry once exhausted."""

    def __init__(self, schedule: Sequence[timedelta] = DEFAULT_BACKOFF_SCHEDULE) -> None:
        if not schedule:
            raise ValueError("backoff schedule must contain at least one delay")
        if any(value < timedelta(0) for value in schedule):
            raise ValueError("backoff delays must not be negative")
        if any(later < earlier for earlier, later in zip(schedule, schedule[1:])):
            raise ValueError("backoff delays must be non-decreasing")
        self._schedule = tuple(schedule)

    @property
    def schedule(self) -> tuple[timedelta, ...]:
        return self._schedule

    def delay_for(self, attempts: int, *, channel: str | None = None, template: str | None = None) -> timedelta:
        _ = (channel, template)
        index = min(max(0, attempts), len(self._schedule) - 1)
        return self._schedule[index]
