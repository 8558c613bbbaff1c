from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from .backoff import BackoffPolicy, FixedScheduleBackoff
from .outcomes import failure_changes
from .queue_store import NotificationQueueRepository, NotificationRecord
from .state_machine import FAILED, PROCESSING, sources_for

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "processing lease expired"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ClaimError(Exception):
    """Raised when a record was claimed by another worker or is no longer eligible."""

    ALREADY_CLAIMED_OR_INELIGIBLE = "already_claimed_or_ineligible"

    def __init__(self, record_id: str, reason: str = ALREADY_CLAIMED_OR_INELIGIBLE) -> None:
        super().__init__(f"notification {record_id} could not be claimed: {reason}")
        self.record_id = record_id
        self.reason = reason


class ClaimCoordinator:
    """Hands a record to exactly one worker by flipping its status to processing.

    The status column is the lock: the claim is a single conditional write and
    nothing else ever moves a record into ``processing``.
    """

    def __init__(self, repository: NotificationQueueRepository) -> None:
        self._repository = repository

    def claim(self, record_id: str, *, now: datetime | None = None) -> NotificationRecord:
        current = _coerce_utc(now) if now is not None else _now_utc()
        claimed = self._repository.compare_and_set(
            record_id,
            expected_statuses=sources_for(PROCESSING),
            changes={
                "status": PROCESSING,
                "triggered_at": current,
                "claimed_at": current,
                "next_attempt_at": None,
            },
            eligible_at=current,
        )
        if claimed is None:
            logger.debug("claim lost for notification %s", record_id)
            raise ClaimError(record_id)
        return claimed


@dataclass(frozen=True)
class SweepResult:
    requeued_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)


class ProcessingLeaseSweeper:
    """Returns records stuck in processing past their lease to the retry path."""

    def __init__(
        self,
        repository: NotificationQueueRepository,
        *,
        lease: timedelta = timedelta(minutes=15),
        backoff: BackoffPolicy | None = None,
    ) -> None:
        if lease <= timedelta(0):
            raise ValueError("processing lease must be positive")
        self._repository = repository
        self._lease = lease
        self._backoff = backoff or FixedScheduleBackoff()

    def sweep(self, *, now: datetime | None = None) -> SweepResult:
        current = _coerce_utc(now) if now is not None else _now_utc()
        cutoff = current - self._lease
        requeued: list[str] = []
        failed: list[str] = []
        for record in self._repository.list_records(statuses=[PROCESSING]):
            if record.claimed_at is None or record.claimed_at >= cutoff:
                continue
            changes = failure_changes(record, now=current, error=LEASE_EXPIRED_ERROR, backoff=self._backoff)
            updated = self._repository.compare_and_set(
                record.id,
                expected_statuses=[PROCESSING],
                changes=changes,
                claimed_before=cutoff,
            )
            if updated is None:
                continue
            logger.warning(
                "notification %s exceeded its processing lease (claimed at %s); now %s",
                record.id,
                record.claimed_at.isoformat(),
                updated.status,
            )
            if updated.status == FAILED:
                failed.append(record.id)
            else:
                requeued.append(record.id)
        return SweepResult(requeued_ids=requeued, failed_ids=failed)
