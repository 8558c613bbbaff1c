from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Iterable

from .queue_store import EPISODE_REMINDER, NotificationQueueRepository, NotificationRecord, RecordNotFoundError
from .state_machine import REMINDER_DUE, SENT, is_expired, sources_for

logger = logging.getLogger(__name__)

DEFAULT_REMINDER_DAYS = (3, 7, 12)

_OFFSET_RE = re.compile(r"^\+?\s*(\d+)\s*(minute|hour|day|week)s?$", re.IGNORECASE)
_UNIT_SECONDS = {
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "week": 604800,
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_reminder_offset(value: str) -> timedelta:
    """Parse offsets such as ``"+3 days"`` or ``"+12 hours"``."""
    match = _OFFSET_RE.match(value.strip())
    if match is None:
        raise ValueError(f"invalid reminder offset: {value!r}")
    amount = int(match.group(1))
    unit = match.group(2).lower()
    return timedelta(seconds=amount * _UNIT_SECONDS[unit])


def normalize_reminder_schedule(values: Iterable[str]) -> tuple[str, ...]:
    normalized: list[str] = []
    for raw in values:
        parse_reminder_offset(raw)
        normalized.append(raw.strip())
    return tuple(normalized)


def reminder_schedule_for_days(days: Iterable[int]) -> tuple[str, ...]:
    schedule: list[str] = []
    for day in days:
        if day <= 0:
            raise ValueError("reminder days must be positive")
        schedule.append(f"+{day} days")
    return tuple(schedule)


def next_reminder_at(record: NotificationRecord) -> datetime | None:
    """When the next reminder falls due, or None once the schedule is spent.

    Offsets are absolute from the first delivery (``reminder_anchor_at``), not gaps
    between reminders: ``("+3 days", "+7 days")`` fires on day 3 and day 7.
    """
    if record.reminder_count >= len(record.reminder_schedule):
        return None
    anchor = record.reminder_anchor_at or record.completed_at
    if anchor is None:
        return None
    return anchor + parse_reminder_offset(record.reminder_schedule[record.reminder_count])


class ReminderScheduler:
    """Re-opens sent records for follow-up sends once their next offset has elapsed."""

    def __init__(self, repository: NotificationQueueRepository, *, default_template: str = "invitation_reminder") -> None:
        self._repository = repository
        self._default_template = default_template

    def schedule_due(self, *, now: datetime | None = None) -> list[str]:
        current = _coerce_utc(now) if now is not None else _now_utc()
        reopened: list[str] = []
        for record in self._repository.list_records(statuses=[SENT]):
            if is_expired(record, current):
                continue
            due_at = next_reminder_at(record)
            if due_at is None or due_at > current:
                continue
            updated = self._repository.compare_and_set(
                record.id,
                expected_statuses=sources_for(REMINDER_DUE),
                changes={
                    "status": REMINDER_DUE,
                    "episode_kind": EPISODE_REMINDER,
                    "episode_started_at": current,
                    "send_after": current,
                    "next_attempt_at": None,
                    "last_error": None,
                },
            )
            if updated is None:
                continue
            logger.info(
                "notification %s reminder %s/%s due",
                record.id,
                record.reminder_count + 1,
                len(record.reminder_schedule),
            )
            reopened.append(record.id)
        return reopened

    def configure(
        self,
        record_id: str,
        *,
        days: Iterable[int] = DEFAULT_REMINDER_DAYS,
        template: str | None = None,
    ) -> NotificationRecord:
        schedule = reminder_schedule_for_days(days)
        fallback_template = template or self._default_template

        def _mutate(record: NotificationRecord) -> dict[str, object]:
            return {
                "reminder_schedule": schedule,
                "reminder_count": 0,
                "template": record.template or fallback_template,
            }

        try:
            return self._repository.update_locked(record_id, _mutate)
        except RecordNotFoundError:
            logger.warning("reminder schedule requested for unknown notification %s", record_id)
            raise
