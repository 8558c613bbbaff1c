from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Mapping

from .queue_store import (
    EPISODE_DELIVERY,
    NotificationQueueRepository,
    NotificationRecord,
    RecordNotFoundError,
)
from .reminders import normalize_reminder_schedule
from .state_machine import (
    CANCELLED,
    FAILED,
    PAUSED,
    PENDING,
    RETRY_SCHEDULED,
    SENT,
    InvalidTransitionError,
    sources_for,
)

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = "Cancelled by admin"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class RecentFailure:
    id: str
    error: str | None
    attempts: int
    created_at: datetime
    triggered_at: datetime | None


@dataclass(frozen=True)
class QueueStats:
    total_notifications: int
    by_status: dict[str, int]
    pending_count: int
    failed_count: int
    retry_scheduled_count: int
    average_attempts: float
    delivery_methods_usage: dict[str, int]
    recent_failures: list[RecentFailure] = field(default_factory=list)
    stats_generated_at: datetime = field(default_factory=_now_utc)


@dataclass(frozen=True)
class TriggerResult:
    action: str
    affected_count: int
    triggered_at: datetime
    record_ids: list[str] = field(default_factory=list)


class AdminControlSurface:
    """Operator actions over the queue, built on the same primitives as the workers."""

    def __init__(
        self,
        repository: NotificationQueueRepository,
        *,
        default_max_attempts: int = 3,
        recent_failures_limit: int = 10,
    ) -> None:
        if default_max_attempts < 1:
            raise ValueError("default_max_attempts must be at least 1")
        self._repository = repository
        self._default_max_attempts = default_max_attempts
        self._recent_failures_limit = recent_failures_limit

    def enqueue(
        self,
        record_id: str,
        *,
        template: str,
        delivery_methods: Iterable[str],
        template_data: Mapping[str, object] | None = None,
        delay: timedelta = timedelta(0),
        triggered_by: str = "system",
        custom_message: str | None = None,
        metadata: Mapping[str, str] | None = None,
        expires_at: datetime | None = None,
        max_attempts: int | None = None,
        reminder_schedule: Iterable[str] | None = None,
        now: datetime | None = None,
    ) -> NotificationRecord:
        current = _coerce_utc(now) if now is not None else _now_utc()
        methods = _normalize_methods(delivery_methods)
        if delay < timedelta(0):
            raise ValueError("delay must not be negative")
        ceiling = max_attempts if max_attempts is not None else self._default_max_attempts
        if ceiling < 1:
            raise ValueError("max_attempts must be at least 1")

        changes: dict[str, object] = {
            "status": PENDING,
            "delivery_methods": methods,
            "delivery_status": {},
            "template": template,
            "template_data": dict(template_data or {}),
            "custom_message": custom_message,
            "send_after": current + delay,
            "expires_at": _coerce_utc(expires_at) if expires_at is not None else None,
            "attempts": 0,
            "max_attempts": ceiling,
            "next_attempt_at": None,
            "last_error": None,
            "triggered_by": triggered_by,
            "triggered_at": current,
            "completed_at": None,
            "claimed_at": None,
            "episode_started_at": current,
            "episode_kind": EPISODE_DELIVERY,
            "reminder_count": 0,
            "last_reminder_at": None,
            "reminder_anchor_at": None,
        }
        if metadata is not None:
            changes["metadata"] = dict(metadata)
        if reminder_schedule is not None:
            changes["reminder_schedule"] = normalize_reminder_schedule(reminder_schedule)

        existing = self._repository.get(record_id)
        if existing is None:
            created = self._repository.insert(
                NotificationRecord(id=record_id, created_at=current, updated_at=current, **changes)  # type: ignore[arg-type]
            )
            if created is not None:
                logger.info("notification %s queued via %s (%s)", record_id, triggered_by, ",".join(methods))
                return created

        reset = self._repository.compare_and_set(
            record_id,
            expected_statuses=sources_for(PENDING),
            changes=changes,
        )
        if reset is None:
            raise self._transition_error(record_id, PENDING, "re-queue")
        logger.info("notification %s re-queued via %s (%s)", record_id, triggered_by, ",".join(methods))
        return reset

    def cancel(
        self,
        record_id: str,
        reason: str = DEFAULT_CANCEL_REASON,
        *,
        now: datetime | None = None,
    ) -> NotificationRecord:
        current = _coerce_utc(now) if now is not None else _now_utc()
        cancelled = self._repository.compare_and_set(
            record_id,
            expected_statuses=sources_for(CANCELLED),
            changes={
                "status": CANCELLED,
                "last_error": reason.strip() or DEFAULT_CANCEL_REASON,
                "completed_at": current,
                "next_attempt_at": None,
            },
        )
        if cancelled is None:
            raise self._transition_error(record_id, CANCELLED, "cancel")
        logger.info("notification %s cancelled: %s", record_id, cancelled.last_error)
        return cancelled

    def force_retry(
        self,
        record_id: str,
        *,
        send_after: datetime | None = None,
        expires_at: datetime | None = None,
        clear_expiry: bool = False,
        now: datetime | None = None,
    ) -> NotificationRecord:
        current = _coerce_utc(now) if now is not None else _now_utc()
        existing = self._repository.get(record_id)
        if existing is None:
            raise RecordNotFoundError(record_id)

        changes: dict[str, object] = {
            "status": PENDING,
            "attempts": 0,
            "send_after": _coerce_utc(send_after) if send_after is not None else current,
            "next_attempt_at": None,
            "last_error": None,
        }
        if clear_expiry:
            changes["expires_at"] = None
        elif expires_at is not None:
            changes["expires_at"] = _coerce_utc(expires_at)
        if existing.status == SENT:
            # A completed episode has nothing outstanding; resend every channel.
            changes["episode_started_at"] = current
            changes["episode_kind"] = EPISODE_DELIVERY

        retried = self._repository.compare_and_set(
            record_id,
            expected_statuses=[existing.status] if existing.status in sources_for(PENDING) else [],
            changes=changes,
        )
        if retried is None:
            raise self._transition_error(record_id, PENDING, "force retry")
        logger.info("notification %s force-retried from %s", record_id, existing.status)
        return retried

    def pause(self, record_id: str) -> NotificationRecord:
        paused = self._repository.compare_and_set(
            record_id,
            expected_statuses=sources_for(PAUSED),
            changes={"status": PAUSED, "next_attempt_at": None},
        )
        if paused is None:
            raise self._transition_error(record_id, PAUSED, "pause")
        logger.info("notification %s paused", record_id)
        return paused

    def resume(self, record_id: str, *, now: datetime | None = None) -> NotificationRecord:
        current = _coerce_utc(now) if now is not None else _now_utc()
        resumed = self._repository.compare_and_set(
            record_id,
            expected_statuses=[PAUSED],
            changes={"status": PENDING, "send_after": current, "next_attempt_at": None},
        )
        if resumed is None:
            raise self._transition_error(record_id, PENDING, "resume")
        logger.info("notification %s resumed", record_id)
        return resumed

    def trigger_all_pending(self, *, now: datetime | None = None) -> TriggerResult:
        """Pull every deferred pending or retry-scheduled send forward to now."""
        current = _coerce_utc(now) if now is not None else _now_utc()
        affected: list[str] = []
        for record in self._repository.list_records(statuses=[PENDING, RETRY_SCHEDULED]):
            if record.send_after <= current:
                continue
            updated = self._repository.compare_and_set(
                record.id,
                expected_statuses=[record.status],
                changes={
                    "send_after": current,
                    "next_attempt_at": current if record.status == RETRY_SCHEDULED else None,
                },
            )
            if updated is not None:
                affected.append(record.id)
        logger.info("triggered %s deferred notifications", len(affected))
        return TriggerResult(
            action="trigger_all_pending",
            affected_count=len(affected),
            triggered_at=current,
            record_ids=affected,
        )

    def stats(self, *, now: datetime | None = None) -> QueueStats:
        current = _coerce_utc(now) if now is not None else _now_utc()
        records = self._repository.list_records()
        by_status = Counter(record.status for record in records)
        usage: Counter[str] = Counter()
        for record in records:
            usage.update(record.delivery_methods)
        average = round(sum(record.attempts for record in records) / len(records), 2) if records else 0.0

        failures = [record for record in records if record.status == FAILED and record.last_error]
        failures.sort(
            key=lambda value: value.triggered_at or value.created_at,
            reverse=True,
        )
        recent = [
            RecentFailure(
                id=record.id,
                error=record.last_error,
                attempts=record.attempts,
                created_at=record.created_at,
                triggered_at=record.triggered_at,
            )
            for record in failures[: self._recent_failures_limit]
        ]
        return QueueStats(
            total_notifications=len(records),
            by_status=dict(by_status),
            pending_count=by_status.get(PENDING, 0),
            failed_count=by_status.get(FAILED, 0),
            retry_scheduled_count=by_status.get(RETRY_SCHEDULED, 0),
            average_attempts=average,
            delivery_methods_usage=dict(usage),
            recent_failures=recent,
            stats_generated_at=current,
        )

    def get(self, record_id: str) -> NotificationRecord:
        record = self._repository.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    def _transition_error(self, record_id: str, target: str, action: str) -> Exception:
        record = self._repository.get(record_id)
        if record is None:
            return RecordNotFoundError(record_id)
        return InvalidTransitionError(
            record.status,
            target,
            f"cannot {action} notification {record_id} in status {record.status}",
        )


def _normalize_methods(values: Iterable[str]) -> tuple[str, ...]:
    methods: list[str] = []
    for raw in values:
        channel = str(raw).strip().lower()
        if not channel:
            raise ValueError("delivery methods cannot be blank")
        if channel not in methods:
            methods.append(channel)
    if not methods:
        raise ValueError("at least one delivery method is required")
    return tuple(methods)
