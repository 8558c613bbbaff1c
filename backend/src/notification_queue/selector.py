from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from .queue_store import NotificationQueueRepository, NotificationRecord


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return _coerce_utc(datetime.fromisoformat(value))
    except ValueError:
        return None


def channel_sent_this_episode(record: NotificationRecord, channel: str) -> bool:
    entry = record.delivery_status.get(channel)
    if not entry or entry.get("status") != "sent":
        return False
    if record.episode_started_at is None:
        return True
    if "episode" in entry:
        # Entries carry the episode they were merged into; untagged ones fall back to timestamps.
        return _parse_timestamp(entry["episode"]) == record.episode_started_at
    sent_at = _parse_timestamp(entry.get("timestamp"))
    return sent_at is not None and sent_at >= record.episode_started_at


def outstanding_channels(record: NotificationRecord) -> tuple[str, ...]:
    """Requested channels that have not been delivered in the current episode."""
    return tuple(channel for channel in record.delivery_methods if not channel_sent_this_episode(record, channel))


@dataclass(frozen=True)
class EligibleRecord:
    id: str
    status: str
    template: str | None
    template_data: dict[str, object]
    custom_message: str | None
    metadata: dict[str, str]
    delivery_methods: tuple[str, ...]
    outstanding_channels: tuple[str, ...]
    attempts: int
    max_attempts: int
    episode_kind: str
    reminder_count: int
    created_at: datetime

    @classmethod
    def from_record(cls, record: NotificationRecord) -> EligibleRecord:
        return cls(
            id=record.id,
            status=record.status,
            template=record.template,
            template_data=dict(record.template_data),
            custom_message=record.custom_message,
            metadata=dict(record.metadata),
            delivery_methods=record.delivery_methods,
            outstanding_channels=outstanding_channels(record),
            attempts=record.attempts,
            max_attempts=record.max_attempts,
            episode_kind=record.episode_kind,
            reminder_count=record.reminder_count,
            created_at=record.created_at,
        )


class EligibilitySelector:
    """Read-only view of the queue: which records a worker may try to claim next."""

    def __init__(self, repository: NotificationQueueRepository) -> None:
        self._repository = repository

    def pick_batch(self, limit: int, *, now: datetime | None = None) -> list[EligibleRecord]:
        if limit <= 0:
            return []
        current = _coerce_utc(now) if now is not None else _now_utc()
        records = self._repository.list_eligible(now=current, limit=limit)
        return [EligibleRecord.from_record(record) for record in records]
