"""Legal notification statuses, transitions and the eligibility rule."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .queue_store import NotificationRecord

PENDING = "pending"
PROCESSING = "processing"
SENT = "sent"
FAILED = "failed"
RETRY_SCHEDULED = "retry_scheduled"
REMINDER_DUE = "reminder_due"
CANCELLED = "cancelled"
PAUSED = "paused"

ALL_STATUSES = frozenset(
    {PENDING, PROCESSING, SENT, FAILED, RETRY_SCHEDULED, REMINDER_DUE, CANCELLED, PAUSED}
)

ELIGIBLE_STATUSES = frozenset({PENDING, RETRY_SCHEDULED, REMINDER_DUE})

# Lower value is picked first.
SELECTION_PRIORITY: dict[str, int] = {
    RETRY_SCHEDULED: 1,
    REMINDER_DUE: 2,
    PENDING: 3,
}

# Transitions into PENDING from settled states are admin resets (enqueue,
# force retry, resume); everything else is driven by the queue itself.
# RETRY_SCHEDULED -> SENT is a late success that completes a swept record.
TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PROCESSING, CANCELLED, PAUSED, PENDING}),
    RETRY_SCHEDULED: frozenset({PROCESSING, CANCELLED, PAUSED, PENDING, SENT}),
    REMINDER_DUE: frozenset({PROCESSING, CANCELLED, PAUSED, PENDING}),
    PROCESSING: frozenset({SENT, RETRY_SCHEDULED, FAILED, CANCELLED}),
    SENT: frozenset({REMINDER_DUE, PENDING}),
    FAILED: frozenset({PENDING}),
    CANCELLED: frozenset({PENDING}),
    PAUSED: frozenset({PENDING, CANCELLED}),
}


class InvalidTransitionError(ValueError):
    """Raised when a status change is not allowed from the record's current status."""

    def __init__(self, current: str, target: str, message: str | None = None) -> None:
        super().__init__(message or f"cannot move notification from {current} to {target}")
        self.current = current
        self.target = target


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


def sources_for(target: str) -> frozenset[str]:
    """Statuses from which ``target`` may be reached; used as write preconditions."""
    return frozenset(source for source, targets in TRANSITIONS.items() if target in targets)


def is_expired(record: NotificationRecord, now: datetime) -> bool:
    return record.expires_at is not None and record.expires_at <= now


def is_eligible(record: NotificationRecord, now: datetime) -> bool:
    if record.status not in ELIGIBLE_STATUSES:
        return False
    if record.send_after > now:
        return False
    if is_expired(record, now):
        return False
    return record.attempts < record.max_attempts


def selection_key(record: NotificationRecord) -> tuple[int, datetime, str]:
    return (SELECTION_PRIORITY.get(record.status, len(SELECTION_PRIORITY) + 1), record.created_at, record.id)
