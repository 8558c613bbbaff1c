from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from notification_queue.queue_store import NotificationRecord
from notification_queue.state_machine import (
    ALL_STATUSES,
    CANCELLED,
    FAILED,
    PAUSED,
    PENDING,
    PROCESSING,
    REMINDER_DUE,
    RETRY_SCHEDULED,
    SENT,
    TRANSITIONS,
    InvalidTransitionError,
    can_transition,
    ensure_transition,
    is_eligible,
    selection_key,
    sources_for,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_record(**overrides) -> NotificationRecord:
    values = {
        "id": "inv-001",
        "status": PENDING,
        "delivery_methods": ("email",),
        "send_after": NOW - timedelta(minutes=1),
        "created_at": NOW - timedelta(hours=1),
        "updated_at": NOW - timedelta(hours=1),
    }
    values.update(overrides)
    return NotificationRecord(**values)


def test_every_status_has_a_transition_entry() -> None:
    assert set(TRANSITIONS) == ALL_STATUSES
    for targets in TRANSITIONS.values():
        assert targets <= ALL_STATUSES


def test_only_eligible_statuses_can_be_claimed() -> None:
    assert sources_for(PROCESSING) == {PENDING, RETRY_SCHEDULED, REMINDER_DUE}
    assert not can_transition(SENT, PROCESSING)
    assert not can_transition(PAUSED, PROCESSING)
    assert not can_transition(PROCESSING, PROCESSING)


def test_processing_settles_into_outcome_statuses() -> None:
    assert TRANSITIONS[PROCESSING] == {SENT, RETRY_SCHEDULED, FAILED, CANCELLED}
    assert not can_transition(PROCESSING, PENDING)


def test_late_success_can_settle_a_scheduled_retry() -> None:
    assert can_transition(RETRY_SCHEDULED, SENT)
    assert not can_transition(PENDING, SENT)
    assert not can_transition(REMINDER_DUE, SENT)


def test_ensure_transition_raises_with_statuses() -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        ensure_transition(FAILED, SENT)
    assert exc_info.value.current == FAILED
    assert exc_info.value.target == SENT
    assert "failed" in str(exc_info.value)


def test_requeue_is_blocked_only_while_processing() -> None:
    assert PROCESSING not in sources_for(PENDING)
    assert {SENT, FAILED, CANCELLED, PAUSED, PENDING} <= sources_for(PENDING)


def test_is_eligible_requires_due_unexpired_and_budget_left() -> None:
    assert is_eligible(_make_record(), NOW)
    assert not is_eligible(_make_record(send_after=NOW + timedelta(seconds=1)), NOW)
    assert not is_eligible(_make_record(expires_at=NOW), NOW)
    assert is_eligible(_make_record(expires_at=NOW + timedelta(days=1)), NOW)
    assert not is_eligible(_make_record(attempts=3, max_attempts=3), NOW)
    assert not is_eligible(_make_record(status=PAUSED), NOW)
    assert not is_eligible(_make_record(status=SENT), NOW)


def test_selection_key_orders_retries_before_reminders_before_new_sends() -> None:
    older_pending = _make_record(id="a", status=PENDING, created_at=NOW - timedelta(days=2))
    reminder = _make_record(id="b", status=REMINDER_DUE)
    retry = _make_record(id="c", status=RETRY_SCHEDULED)
    newer_pending = _make_record(id="d", status=PENDING)

    ordered = sorted([newer_pending, older_pending, reminder, retry], key=selection_key)

    assert [record.id for record in ordered] == ["c", "b", "a", "d"]
