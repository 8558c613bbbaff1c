from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from .reminders import parse_reminder_offset

NotificationStatus = Literal[
    "pending",
    "processing",
    "sent",
    "failed",
    "retry_scheduled",
    "reminder_due",
    "cancelled",
    "paused",
]
DeliveryChannel = Literal["email", "sms", "push", "chat", "discord"]
EpisodeKind = Literal["delivery", "reminder"]


class EnqueueRequest(BaseModel):
    record_id: str = Field(min_length=1, max_length=128)
    template: str = Field(min_length=1, max_length=100)
    delivery_methods: list[DeliveryChannel] = Field(default_factory=lambda: ["email"], min_length=1, max_length=5)
    template_data: dict[str, Any] = Field(default_factory=dict)
    custom_message: str | None = Field(default=None, max_length=4000)
    metadata: dict[str, str] | None = None
    delay_seconds: int = Field(default=0, ge=0, le=60 * 60 * 24 * 90)
    expires_at: datetime | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=20)
    reminder_schedule: list[str] | None = Field(default=None, max_length=12)
    triggered_by: str = Field(default="system", min_length=1, max_length=100)

    @field_validator("record_id", "template")
    @classmethod
    def _strip_required(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("value cannot be blank")
        return normalized

    @field_validator("delivery_methods")
    @classmethod
    def _unique_methods(cls, value: list[str]) -> list[str]:
        if len(set(value)) != len(value):
            raise ValueError("delivery_methods entries must be unique")
        return value

    @field_validator("reminder_schedule")
    @classmethod
    def _validate_schedule(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        normalized: list[str] = []
        for raw in value:
            parse_reminder_offset(raw)
            normalized.append(raw.strip())
        return normalized


class CancelRequest(BaseModel):
    reason: str = Field(default="Cancelled by admin", min_length=1, max_length=500)


class ForceRetryRequest(BaseModel):
    send_after: datetime | None = None
    expires_at: datetime | None = None
    clear_expiry: bool = False


class ReminderConfigureRequest(BaseModel):
    days: list[int] = Field(default_factory=lambda: [3, 7, 12], min_length=1, max_length=12)
    template: str | None = Field(default=None, min_length=1, max_length=100)

    @field_validator("days")
    @classmethod
    def _positive_days(cls, value: list[int]) -> list[int]:
        if any(day <= 0 for day in value):
            raise ValueError("reminder days must be positive")
        return value


class PickBatchRequest(BaseModel):
    limit: int = Field(default=25, ge=1, le=500)


class DeliverySuccessRequest(BaseModel):
    provider_message_id: str | None = Field(default=None, max_length=256)


class DeliveryFailureRequest(BaseModel):
    error: str = Field(min_length=1, max_length=2000)


class NotificationRecordView(BaseModel):
    id: str
    status: NotificationStatus
    delivery_methods: list[str]
    delivery_status: dict[str, dict[str, Any]]
    attempts: int
    max_attempts: int
    next_attempt_at: datetime | None = None
    send_after: datetime
    expires_at: datetime | None = None
    template: str | None = None
    template_data: dict[str, Any]
    custom_message: str | None = None
    metadata: dict[str, str]
    reminder_schedule: list[str]
    reminder_count: int
    last_reminder_at: datetime | None = None
    last_error: str | None = None
    triggered_by: str | None = None
    triggered_at: datetime | None = None
    completed_at: datetime | None = None
    claimed_at: datetime | None = None
    episode_started_at: datetime | None = None
    episode_kind: EpisodeKind
    reminder_anchor_at: datetime | None = None
    email_sent: bool
    email_sent_at: datetime | None = None
    email_id: str | None = None
    email_attempts: int
    last_email_error: str | None = None
    created_at: datetime
    updated_at: datetime


class EligibleRecordView(BaseModel):
    id: str
    status: NotificationStatus
    template: str | None = None
    template_data: dict[str, Any]
    custom_message: str | None = None
    metadata: dict[str, str]
    delivery_methods: list[str]
    outstanding_channels: list[str]
    attempts: int
    max_attempts: int
    episode_kind: EpisodeKind
    reminder_count: int
    created_at: datetime


class PickBatchResponse(BaseModel):
    count: int
    records: list[EligibleRecordView]


class TriggerPendingResponse(BaseModel):
    action: str
    affected_count: int
    triggered_at: datetime
    record_ids: list[str]


class RecentFailureView(BaseModel):
    id: str
    error: str | None = None
    attempts: int
    created_at: datetime
    triggered_at: datetime | None = None


class QueueStatsResponse(BaseModel):
    total_notifications: int
    by_status: dict[str, int]
    pending_count: int
    failed_count: int
    retry_scheduled_count: int
    average_attempts: float
    delivery_methods_usage: dict[str, int]
    recent_failures: list[RecentFailureView]
    stats_generated_at: datetime


class SweepResponse(BaseModel):
    requeued_ids: list[str]
    failed_ids: list[str]


class ReminderRunResponse(BaseModel):
    reopened_count: int
    record_ids: list[str]


class WorkerRunResponse(BaseModel):
    requeued_stuck: int
    failed_stuck: int
    reminders_opened: int
    picked: int
    claimed: int
    lost_claims: int
    sent: int
    retry_scheduled: int
    failed: int
    channel_failures: int
