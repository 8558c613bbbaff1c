from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .admin import AdminControlSurface
from .backoff import DEFAULT_BACKOFF_SCHEDULE, FixedScheduleBackoff
from .claims import ClaimCoordinator, ClaimError, ProcessingLeaseSweeper
from .config import Settings
from .outcomes import DeliveryOutcomeHandler
from .queue_store import EPISODE_REMINDER, NotificationQueueRepository, NotificationRecord, RecordNotFoundError
from .reminders import ReminderScheduler
from .selector import EligibilitySelector, outstanding_channels
from .senders import ChannelSender, DeliveryPayload, HttpChannelSender, StubChannelSender, mask_contact_target
from .state_machine import FAILED, RETRY_SCHEDULED, SENT, InvalidTransitionError

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QueueComponents:
    repository: NotificationQueueRepository
    selector: EligibilitySelector
    claims: ClaimCoordinator
    outcomes: DeliveryOutcomeHandler
    reminders: ReminderScheduler
    sweeper: ProcessingLeaseSweeper
    admin: AdminControlSurface


def build_queue(repository: NotificationQueueRepository, settings: Settings) -> QueueComponents:
    backoff = FixedScheduleBackoff(settings.backoff_schedule or DEFAULT_BACKOFF_SCHEDULE)
    return QueueComponents(
        repository=repository,
        selector=EligibilitySelector(repository),
        claims=ClaimCoordinator(repository),
        outcomes=DeliveryOutcomeHandler(
            repository,
            backoff=backoff,
            completion_policy=settings.completion_policy,
        ),
        reminders=ReminderScheduler(repository, default_template=settings.reminder_template),
        sweeper=ProcessingLeaseSweeper(repository, lease=settings.processing_lease, backoff=backoff),
        admin=AdminControlSurface(
            repository,
            default_max_attempts=settings.default_max_attempts,
            recent_failures_limit=settings.stats_recent_failures,
        ),
    )


def create_channel_sender(settings: Settings) -> ChannelSender:
    if settings.sender_type == "http":
        return HttpChannelSender(
            base_url=settings.sender_api_base_url,
            api_key=settings.sender_api_key,
            channels=settings.sender_channel_set(),
            timeout_seconds=settings.sender_timeout_seconds,
        )
    return StubChannelSender(enabled=settings.sender_enabled, channels=settings.sender_channels)


@dataclass
class WorkerPassSummary:
    requeued_stuck: int = 0
    failed_stuck: int = 0
    reminders_opened: int = 0
    picked: int = 0
    claimed: int = 0
    lost_claims: int = 0
    sent: int = 0
    retry_scheduled: int = 0
    failed: int = 0
    channel_failures: int = 0


class DeliveryWorker:
    """One polling worker: select, claim, send, report.

    Any number of these may run against the same store; the claim decides who
    handles a record. Channel sends run on a thread pool so a slow provider is
    bounded by ``channel_timeout`` and reported as a failure.
    """

    def __init__(
        self,
        components: QueueComponents,
        sender: ChannelSender,
        *,
        batch_size: int = 25,
        channel_timeout: timedelta = timedelta(seconds=30),
        max_send_threads: int = 8,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if channel_timeout <= timedelta(0):
            raise ValueError("channel_timeout must be positive")
        self._components = components
        self._sender = sender
        self._batch_size = batch_size
        self._channel_timeout = channel_timeout.total_seconds()
        self._executor = ThreadPoolExecutor(max_workers=max_send_threads, thread_name_prefix="channel-send")

    def __enter__(self) -> DeliveryWorker:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def run_once(self, *, now: datetime | None = None) -> WorkerPassSummary:
        summary = WorkerPassSummary()
        sweep = self._components.sweeper.sweep(now=now)
        summary.requeued_stuck = len(sweep.requeued_ids)
        summary.failed_stuck = len(sweep.failed_ids)
        summary.reminders_opened = len(self._components.reminders.schedule_due(now=now))

        batch = self._components.selector.pick_batch(self._batch_size, now=now)
        summary.picked = len(batch)
        for candidate in batch:
            try:
                record = self._components.claims.claim(candidate.id, now=now)
            except ClaimError:
                summary.lost_claims += 1
                continue
            summary.claimed += 1
            final = self._deliver(record, summary, now=now)
            if final is None:
                continue
            if final.status == SENT:
                summary.sent += 1
            elif final.status == RETRY_SCHEDULED:
                summary.retry_scheduled += 1
            elif final.status == FAILED:
                summary.failed += 1
        return summary

    def run_forever(self, stop_event: threading.Event, *, poll_seconds: float = 10.0) -> None:
        logger.info("delivery worker started (batch=%s, poll=%ss)", self._batch_size, poll_seconds)
        while not stop_event.is_set():
            try:
                summary = self.run_once()
            except Exception:
                logger.exception("delivery pass failed; retrying in %ss", poll_seconds)
                stop_event.wait(poll_seconds)
                continue
            if summary.picked == 0:
                stop_event.wait(poll_seconds)
        logger.info("delivery worker stopped")

    def _deliver(
        self,
        record: NotificationRecord,
        summary: WorkerPassSummary,
        *,
        now: datetime | None,
    ) -> NotificationRecord | None:
        channels = outstanding_channels(record)
        if not channels:
            try:
                return self._components.outcomes.complete_delivered(record.id, now=now)
            except (InvalidTransitionError, RecordNotFoundError) as exc:
                logger.warning("notification %s could not be settled: %s", record.id, exc)
                return None
        deadline = time.monotonic() + self._channel_timeout
        futures: dict[str, Future] = {
            channel: self._executor.submit(self._sender.send, channel, self._payload(record, channel))
            for channel in channels
        }

        latest: NotificationRecord | None = record
        for channel, future in futures.items():
            error: str | None = None
            provider_message_id: str | None = None
            try:
                result = future.result(timeout=max(0.0, deadline - time.monotonic()))
            except FutureTimeoutError:
                future.cancel()
                error = f"channel send timed out after {self._channel_timeout:g}s"
            except Exception as exc:
                logger.exception("sender raised for notification %s on %s", record.id, channel)
                error = f"sender error: {exc}"
            else:
                if result.status == "sent":
                    provider_message_id = result.provider_message_id
                else:
                    error = result.describe_error()

            if error is not None:
                summary.channel_failures += 1
                recipient = self._payload(record, channel).recipient
                logger.warning(
                    "notification %s %s delivery to %s failed: %s",
                    record.id,
                    channel,
                    mask_contact_target(recipient, channel),
                    error,
                )
            try:
                if error is None:
                    latest = self._components.outcomes.report_success(
                        record.id, channel, provider_message_id, now=now
                    )
                else:
                    latest = self._components.outcomes.report_failure(record.id, channel, error, now=now)
            except (InvalidTransitionError, RecordNotFoundError) as exc:
                logger.warning("outcome for notification %s on %s was rejected: %s", record.id, channel, exc)
                latest = None
        return latest

    @staticmethod
    def _payload(record: NotificationRecord, channel: str) -> DeliveryPayload:
        return DeliveryPayload(
            record_id=record.id,
            channel=channel,
            template=record.template,
            template_data=dict(record.template_data),
            custom_message=record.custom_message,
            metadata=dict(record.metadata),
            episode_kind=record.episode_kind,
            reminder_number=record.reminder_count + 1 if record.episode_kind == EPISODE_REMINDER else 0,
            attempt=record.attempts + 1,
        )
