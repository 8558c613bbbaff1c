from __future__ import annotations

import hmac
from dataclasses import asdict
from datetime import timedelta

from fastapi import APIRouter, HTTPException, Request

from .claims import ClaimError
from .config import get_settings
from .models import (
    CancelRequest,
    DeliveryFailureRequest,
    DeliverySuccessRequest,
    EligibleRecordView,
    EnqueueRequest,
    ForceRetryRequest,
    NotificationRecordView,
    PickBatchRequest,
    PickBatchResponse,
    QueueStatsResponse,
    ReminderConfigureRequest,
    ReminderRunResponse,
    SweepResponse,
    TriggerPendingResponse,
    WorkerRunResponse,
)
from .queue_store import NotificationRecord, RecordNotFoundError, create_queue_repository
from .senders import ChannelSender
from .state_machine import InvalidTransitionError
from .worker import DeliveryWorker, build_queue, create_channel_sender

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/notifications", tags=["notifications"])
queue_repository = create_queue_repository(
    backend=_settings.queue_store_backend,
    database_url=_settings.database_url,
)
queue = build_queue(queue_repository, _settings)
# Built on first use so a misconfigured sender surfaces through the startup guard instead of at import.
channel_sender: ChannelSender | None = None


def _active_sender() -> ChannelSender:
    global channel_sender
    if channel_sender is None:
        channel_sender = create_channel_sender(_settings)
    return channel_sender


def reset_runtime_state_for_tests() -> None:
    queue_repository.reset()


def _require_admin(request: Request) -> None:
    expected = _settings.admin_token.strip()
    if not expected:
        return
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token:
        raise HTTPException(401, "admin token required")
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(401, "invalid admin token")


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, RecordNotFoundError):
        return HTTPException(404, f"notification {exc.args[0]} not found")
    if isinstance(exc, ClaimError):
        return HTTPException(409, exc.reason)
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(409, str(exc))
    return HTTPException(422, str(exc))


def _record_view(record: NotificationRecord) -> NotificationRecordView:
    return NotificationRecordView.model_validate(asdict(record))


@router.post("/queue", response_model=NotificationRecordView, status_code=201)
def enqueue_notification(payload: EnqueueRequest, request: Request) -> NotificationRecordView:
    _require_admin(request)
    try:
        record = queue.admin.enqueue(
            payload.record_id,
            template=payload.template,
            delivery_methods=payload.delivery_methods,
            template_data=payload.template_data,
            delay=timedelta(seconds=payload.delay_seconds),
            triggered_by=payload.triggered_by,
            custom_message=payload.custom_message,
            metadata=payload.metadata,
            expires_at=payload.expires_at,
            max_attempts=payload.max_attempts,
            reminder_schedule=payload.reminder_schedule,
        )
    except (RecordNotFoundError, InvalidTransitionError, ValueError) as exc:
        raise _http_error(exc) from exc
    return _record_view(record)


@router.get("/stats", response_model=QueueStatsResponse)
def notification_stats(request: Request) -> QueueStatsResponse:
    _require_admin(request)
    return QueueStatsResponse.model_validate(asdict(queue.admin.stats()))


@router.post("/trigger-pending", response_model=TriggerPendingResponse)
def trigger_pending(request: Request) -> TriggerPendingResponse:
    _require_admin(request)
    return TriggerPendingResponse.model_validate(asdict(queue.admin.trigger_all_pending()))


@router.post("/worker/pick", response_model=PickBatchResponse)
def pick_batch(payload: PickBatchRequest, request: Request) -> PickBatchResponse:
    _require_admin(request)
    batch = queue.selector.pick_batch(payload.limit)
    return PickBatchResponse(
        count=len(batch),
        records=[EligibleRecordView.model_validate(asdict(item)) for item in batch],
    )


@router.post("/worker/sweep", response_model=SweepResponse)
def sweep_stuck(request: Request) -> SweepResponse:
    _require_admin(request)
    result = queue.sweeper.sweep()
    return SweepResponse(requeued_ids=result.requeued_ids, failed_ids=result.failed_ids)


@router.post("/worker/reminders", response_model=ReminderRunResponse)
def schedule_reminders(request: Request) -> ReminderRunResponse:
    _require_admin(request)
    reopened = queue.reminders.schedule_due()
    return ReminderRunResponse(reopened_count=len(reopened), record_ids=reopened)


@router.post("/worker/run-once", response_model=WorkerRunResponse)
def run_worker_once(request: Request) -> WorkerRunResponse:
    _require_admin(request)
    with DeliveryWorker(
        queue,
        _active_sender(),
        batch_size=_settings.worker_batch_size,
        channel_timeout=timedelta(seconds=_settings.channel_timeout_seconds),
    ) as worker:
        summary = worker.run_once()
    return WorkerRunResponse.model_validate(asdict(summary))


@router.get("/{record_id}", response_model=NotificationRecordView)
def get_notification(record_id: str, request: Request) -> NotificationRecordView:
    _require_admin(request)
    try:
        record = queue.admin.get(record_id)
    except RecordNotFoundError as exc:
        raise _http_error(exc) from exc
    return _record_view(record)


@router.post("/{record_id}/cancel", response_model=NotificationRecordView)
def cancel_notification(record_id: str, payload: CancelRequest, request: Request) -> NotificationRecordView:
    _require_admin(request)
    try:
        record = queue.admin.cancel(record_id, payload.reason)
    except (RecordNotFoundError, InvalidTransitionError) as exc:
        raise _http_error(exc) from exc
    return _record_view(record)


@router.post("/{record_id}/force-retry", response_model=NotificationRecordView)
def force_retry_notification(
    record_id: str,
    payload: ForceRetryRequest,
    request: Request,
) -> NotificationRecordView:
    _require_admin(request)
    try:
        record = queue.admin.force_retry(
            record_id,
            send_after=payload.send_after,
            expires_at=payload.expires_at,
            clear_expiry=payload.clear_expiry,
        )
    except (RecordNotFoundError, InvalidTransitionError) as exc:
        raise _http_error(exc) from exc
    return _record_view(record)


@router.post("/{record_id}/pause", response_model=NotificationRecordView)
def pause_notification(record_id: str, request: Request) -> NotificationRecordView:
    _require_admin(request)
    try:
        record = queue.admin.pause(record_id)
    except (RecordNotFoundError, InvalidTransitionError) as exc:
        raise _http_error(exc) from exc
    return _record_view(record)


@router.post("/{record_id}/resume", response_model=NotificationRecordView)
def resume_notification(record_id: str, request: Request) -> NotificationRecordView:
    _require_admin(request)
    try:
        record = queue.admin.resume(record_id)
    except (RecordNotFoundError, InvalidTransitionError) as exc:
        raise _http_error(exc) from exc
    return _record_view(record)


@router.post("/{record_id}/reminders", response_model=NotificationRecordView)
def configure_reminders(
    record_id: str,
    payload: ReminderConfigureRequest,
    request: Request,
) -> NotificationRecordView:
    _require_admin(request)
    try:
        record = queue.reminders.configure(record_id, days=payload.days, template=payload.template)
    except (RecordNotFoundError, ValueError) as exc:
        raise _http_error(exc) from exc
    return _record_view(record)


@router.post("/{record_id}/claim", response_model=NotificationRecordView)
def claim_notification(record_id: str, request: Request) -> NotificationRecordView:
    _require_admin(request)
    try:
        record = queue.claims.claim(record_id)
    except ClaimError as exc:
        raise _http_error(exc) from exc
    return _record_view(record)


@router.post("/{record_id}/deliveries/{channel}/success", response_model=NotificationRecordView)
def report_delivery_success(
    record_id: str,
    channel: str,
    payload: DeliverySuccessRequest,
    request: Request,
) -> NotificationRecordView:
    _require_admin(request)
    try:
        record = queue.outcomes.report_success(record_id, channel, payload.provider_message_id)
    except (RecordNotFoundError, InvalidTransitionError, ValueError) as exc:
        raise _http_error(exc) from exc
    return _record_view(record)


@router.post("/{record_id}/deliveries/{channel}/failure", response_model=NotificationRecordView)
def report_delivery_failure(
    record_id: str,
    channel: str,
    payload: DeliveryFailureRequest,
    request: Request,
) -> NotificationRecordView:
    _require_admin(request)
    try:
        record = queue.outcomes.report_failure(record_id, channel, payload.error)
    except (RecordNotFoundError, InvalidTransitionError, ValueError) as exc:
        raise _http_error(exc) from exc
    return _record_view(record)
