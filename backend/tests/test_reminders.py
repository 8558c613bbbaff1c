from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from notification_queue.claims import ClaimCoordinator
from notification_queue.outcomes import DeliveryOutcomeHandler
from notification_queue.queue_store import (
    EPISODE_REMINDER,
    InMemoryNotificationQueueRepository,
    NotificationRecord,
    RecordNotFoundError,
)
from notification_queue.reminders import (
    ReminderScheduler,
    next_reminder_at,
    parse_reminder_offset,
    reminder_schedule_for_days,
)
from notification_queue.selector import EligibilitySelector
from notification_queue.state_machine import REMINDER_DUE, SENT

D = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_sent_record(record_id: str = "T", **overrides) -> NotificationRecord:
    values = {
        "id": record_id,
        "status": SENT,
        "delivery_methods": ("email",),
        "delivery_status": {"email": {"status": "sent", "timestamp": D.isoformat(), "provider_message_id": "m0"}},
        "send_after": D - timedelta(minutes=5),
        "created_at": D - timedelta(hours=1),
        "updated_at": D,
        "template": "invitation_default",
        "metadata": {"email": "guest@example.com"},
        "reminder_schedule": ("+3 days",),
        "completed_at": D,
        "reminder_anchor_at": D,
        "claimed_at": D - timedelta(minutes=1),
        "episode_started_at": D - timedelta(minutes=5),
    }
    values.update(overrides)
    return NotificationRecord(**values)


def test_parse_reminder_offset_accepts_common_units() -> None:
    assert parse_reminder_offset("+3 days") == timedelta(days=3)
    assert parse_reminder_offset("1 day") == timedelta(days=1)
    assert parse_reminder_offset("+12 hours") == timedelta(hours=12)
    assert parse_reminder_offset("+2 Weeks") == timedelta(weeks=2)
    assert parse_reminder_offset("+30 minutes") == timedelta(minutes=30)


@pytest.mark.parametrize("value", ["", "3", "+3 fortnights", "-3 days", "soon"])
def test_parse_reminder_offset_rejects_garbage(value: str) -> None:
    with pytest.raises(ValueError):
        parse_reminder_offset(value)


def test_reminder_schedule_for_days_formats_offsets() -> None:
    assert reminder_schedule_for_days([3, 7, 12]) == ("+3 days", "+7 days", "+12 days")
    with pytest.raises(ValueError):
        reminder_schedule_for_days([0])


def test_reminder_opens_only_after_offset_elapses() -> None:
    repository = InMemoryNotificationQueueRepository()
    repository.insert(_make_sent_record())
    scheduler = ReminderScheduler(repository)
    selector = EligibilitySelector(repository)

    early = D + timedelta(days=3) - timedelta(seconds=1)
    assert scheduler.schedule_due(now=early) == []
    assert selector.pick_batch(10, now=early) == []

    due = D + timedelta(days=3) + timedelta(seconds=1)
    assert scheduler.schedule_due(now=due) == ["T"]
    batch = selector.pick_batch(10, now=due)

    assert [item.id for item in batch] == ["T"]
    assert batch[0].status == REMINDER_DUE
    assert batch[0].episode_kind == EPISODE_REMINDER
    assert batch[0].outstanding_channels == ("email",)


def test_reminder_delivery_counts_and_stops_after_schedule() -> None:
    repository = InMemoryNotificationQueueRepository()
    repository.insert(_make_sent_record(reminder_schedule=("+3 days", "+7 days")))
    scheduler = ReminderScheduler(repository)
    claims = ClaimCoordinator(repository)
    outcomes = DeliveryOutcomeHandler(repository)

    first_due = D + timedelta(days=3, seconds=1)
    scheduler.schedule_due(now=first_due)
    claims.claim("T", now=first_due)
    first = outcomes.report_success("T", "email", "r1", now=first_due)

    assert first.status == SENT
    assert first.reminder_count == 1
    assert first.last_reminder_at == first_due
    assert first.reminder_anchor_at == D
    assert next_reminder_at(first) == D + timedelta(days=7)
    assert scheduler.schedule_due(now=D + timedelta(days=6)) == []

    second_due = D + timedelta(days=7, seconds=1)
    assert scheduler.schedule_due(now=second_due) == ["T"]
    claims.claim("T", now=second_due)
    second = outcomes.report_success("T", "email", "r2", now=second_due)

    assert second.reminder_count == 2
    assert second.reminder_count <= len(second.reminder_schedule)
    assert next_reminder_at(second) is None
    assert scheduler.schedule_due(now=D + timedelta(days=60)) == []


def test_expired_records_get_no_reminders() -> None:
    repository = InMemoryNotificationQueueRepository()
    repository.insert(_make_sent_record(expires_at=D + timedelta(days=1)))

    assert ReminderScheduler(repository).schedule_due(now=D + timedelta(days=4)) == []
    assert repository.get("T").status == SENT


def test_configure_sets_schedule_and_keeps_existing_template() -> None:
    repository = InMemoryNotificationQueueRepository()
    repository.insert(_make_sent_record(reminder_schedule=(), reminder_count=0))
    repository.insert(_make_sent_record("U", template=None))
    scheduler = ReminderScheduler(repository, default_template="invitation_reminder")

    configured = scheduler.configure("T", days=[3, 7, 12])
    fallback = scheduler.configure("U", days=[2])

    assert configured.reminder_schedule == ("+3 days", "+7 days", "+12 days")
    assert configured.reminder_count == 0
    assert configured.template == "invitation_default"
    assert fallback.template == "invitation_reminder"
    with pytest.raises(RecordNotFoundError):
        scheduler.configure("missing")
