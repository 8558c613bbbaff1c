from __future__ import annotations

import logging
from datetime import datetime, timezone

from .backoff import BackoffPolicy, FixedScheduleBackoff
from .queue_store import EPISODE_REMINDER, NotificationQueueRepository, NotificationRecord
from .selector import outstanding_channels
from .state_machine import (
    CANCELLED,
    FAILED,
    PROCESSING,
    RETRY_SCHEDULED,
    SENT,
    InvalidTransitionError,
    ensure_transition,
)

logger = logging.getLogger(__name__)

COMPLETION_POLICIES = frozenset({"all", "any"})
# Statuses a record can reach while a worker still holds results from its last claim.
LATE_OUTCOME_STATUSES = frozenset({SENT, RETRY_SCHEDULED, FAILED, CANCELLED})
LEGACY_EMAIL_CHANNEL = "email"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def failure_changes(
    record: NotificationRecord,
    *,
    now: datetime,
    error: str,
    backoff: BackoffPolicy,
    channel: str | None = None,
) -> dict[str, object]:
    """Charge one attempt and either schedule a retry or fail the record for good."""
    should_retry = record.attempts + 1 < record.max_attempts
    attempts = min(record.attempts + 1, record.max_attempts)
    if should_retry:
        ensure_transition(record.status, RETRY_SCHEDULED)
        next_attempt_at = now + backoff.delay_for(record.attempts, channel=channel, template=record.template)
        return {
            "status": RETRY_SCHEDULED,
            "attempts": attempts,
            "next_attempt_at": next_attempt_at,
            "send_after": next_attempt_at,
            "last_error": error,
        }
    ensure_transition(record.status, FAILED)
    return {
        "status": FAILED,
        "attempts": attempts,
        "next_attempt_at": None,
        "last_error": error,
    }


def _episode_tag(record: NotificationRecord) -> str | None:
    return record.episode_started_at.isoformat() if record.episode_started_at is not None else None


def _legacy_email_success(channel: str, now: datetime, provider_message_id: str | None) -> dict[str, object]:
    if channel != LEGACY_EMAIL_CHANNEL:
        return {}
    return {"email_sent": True, "email_sent_at": now, "email_id": provider_message_id}


def _legacy_email_failure(channel: str, attempts: int, error: str) -> dict[str, object]:
    if channel != LEGACY_EMAIL_CHANNEL:
        return {}
    return {"email_attempts": attempts, "last_email_error": error}


class DeliveryOutcomeHandler:
    """Applies per-channel send results to a claimed record."""

    def __init__(
        self,
        repository: NotificationQueueRepository,
        *,
        backoff: BackoffPolicy | None = None,
        completion_policy: str = "all",
    ) -> None:
        if completion_policy not in COMPLETION_POLICIES:
            raise ValueError(f"unsupported completion policy: {completion_policy}")
        self._repository = repository
        self._backoff = backoff or FixedScheduleBackoff()
        self._completion_policy = completion_policy

    @property
    def completion_policy(self) -> str:
        return self._completion_policy

    def report_success(
        self,
        record_id: str,
        channel: str,
        provider_message_id: str | None = None,
        *,
        now: datetime | None = None,
    ) -> NotificationRecord:
        current = _coerce_utc(now) if now is not None else _now_utc()
        previous_status: list[str] = []

        def _mutate(record: NotificationRecord) -> dict[str, object]:
            self._check_channel(record, channel)
            previous_status.append(record.status)
            entry = {
                "status": "sent",
                "timestamp": current.isoformat(),
                "episode": _episode_tag(record),
                "provider_message_id": provider_message_id,
            }
            changes: dict[str, object] = {"delivery_status": {**record.delivery_status, channel: entry}}
            changes.update(_legacy_email_success(channel, current, provider_message_id))
            if record.status != PROCESSING:
                self._ensure_late_outcome(record)
                if record.status != RETRY_SCHEDULED:
                    return changes

            merged = NotificationRecord(**{**record.__dict__, **changes})
            if self._is_complete(merged):
                ensure_transition(record.status, SENT)
                changes.update(self._completion_changes(record, current))
            return changes

        updated = self._repository.update_locked(record_id, _mutate)
        if previous_status and previous_status[0] in (PROCESSING, RETRY_SCHEDULED) and updated.status == SENT:
            logger.info("notification %s delivered (episode=%s)", record_id, updated.episode_kind)
        return updated

    def report_failure(
        self,
        record_id: str,
        channel: str,
        error: str,
        *,
        now: datetime | None = None,
    ) -> NotificationRecord:
        current = _coerce_utc(now) if now is not None else _now_utc()
        message = error.strip() or "unknown delivery error"

        def _mutate(record: NotificationRecord) -> dict[str, object]:
            self._check_channel(record, channel)
            entry = {
                "status": "failed",
                "timestamp": current.isoformat(),
                "episode": _episode_tag(record),
                "error": message,
            }
            changes: dict[str, object] = {"delivery_status": {**record.delivery_status, channel: entry}}
            if record.status != PROCESSING:
                self._ensure_late_outcome(record)
                if record.status in (RETRY_SCHEDULED, FAILED):
                    changes["last_error"] = message
                changes.update(_legacy_email_failure(channel, record.attempts, message))
                return changes

            changes.update(
                failure_changes(record, now=current, error=message, backoff=self._backoff, channel=channel)
            )
            changes.update(_legacy_email_failure(channel, int(changes["attempts"]), message))
            return changes

        updated = self._repository.update_locked(record_id, _mutate)
        if updated.status == FAILED:
            logger.warning(
                "notification %s failed permanently on %s after %s attempts: %s",
                record_id,
                channel,
                updated.attempts,
                message,
            )
        elif updated.status == RETRY_SCHEDULED:
            logger.warning(
                "notification %s channel %s failed, retry at %s: %s",
                record_id,
                channel,
                updated.next_attempt_at.isoformat() if updated.next_attempt_at else "-",
                message,
            )
        return updated

    def complete_delivered(self, record_id: str, *, now: datetime | None = None) -> NotificationRecord:
        """Settle a claimed record whose channels were all delivered before the claim.

        Happens when a swept claim's sends land late; nothing is sent again.
        """
        current = _coerce_utc(now) if now is not None else _now_utc()

        def _mutate(record: NotificationRecord) -> dict[str, object]:
            if record.status != PROCESSING or not self._is_complete(record):
                raise InvalidTransitionError(
                    record.status,
                    SENT,
                    f"notification {record.id} still has channels to deliver",
                )
            return self._completion_changes(record, current)

        updated = self._repository.update_locked(record_id, _mutate)
        logger.info("notification %s settled without resending (episode=%s)", record_id, updated.episode_kind)
        return updated

    def _is_complete(self, record: NotificationRecord) -> bool:
        if self._completion_policy == "any":
            return True
        return not outstanding_channels(record)

    def _completion_changes(self, record: NotificationRecord, now: datetime) -> dict[str, object]:
        changes: dict[str, object] = {
            "status": SENT,
            "completed_at": now,
            "last_error": None,
            "next_attempt_at": None,
        }
        if record.episode_kind == EPISODE_REMINDER:
            changes["reminder_count"] = min(record.reminder_count + 1, len(record.reminder_schedule))
            changes["last_reminder_at"] = now
        else:
            changes["reminder_anchor_at"] = now
        return changes

    @staticmethod
    def _check_channel(record: NotificationRecord, channel: str) -> None:
        if channel not in record.delivery_methods:
            raise ValueError(f"channel {channel} was not requested for notification {record.id}")

    @staticmethod
    def _ensure_late_outcome(record: NotificationRecord) -> None:
        if record.status in LATE_OUTCOME_STATUSES and record.claimed_at is not None:
            return
        raise InvalidTransitionError(
            record.status,
            PROCESSING,
            f"notification {record.id} is not in flight (status {record.status})",
        )
