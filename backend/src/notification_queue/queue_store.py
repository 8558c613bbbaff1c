from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Iterable, Mapping, Protocol

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, case, create_engine, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .state_machine import (
    ELIGIBLE_STATUSES,
    SELECTION_PRIORITY,
    is_eligible,
    selection_key,
)

EPISODE_DELIVERY = "delivery"
EPISODE_REMINDER = "reminder"


class RecordNotFoundError(KeyError):
    """Raised when an operation references a notification id that does not exist."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


@dataclass(frozen=True)
class NotificationRecord:
    id: str
    status: str
    delivery_methods: tuple[str, ...]
    send_after: datetime
    created_at: datetime
    updated_at: datetime
    delivery_status: dict[str, dict[str, object]] = field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 3
    next_attempt_at: datetime | None = None
    expires_at: datetime | None = None
    template: str | None = None
    template_data: dict[str, object] = field(default_factory=dict)
    custom_message: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    reminder_schedule: tuple[str, ...] = ()
    reminder_count: int = 0
    last_reminder_at: datetime | None = None
    last_error: str | None = None
    triggered_by: str | None = None
    triggered_at: datetime | None = None
    completed_at: datetime | None = None
    claimed_at: datetime | None = None
    episode_started_at: datetime | None = None
    episode_kind: str = EPISODE_DELIVERY
    reminder_anchor_at: datetime | None = None
    # Single-channel fields still read by older email-only consumers.
    email_sent: bool = False
    email_sent_at: datetime | None = None
    email_id: str | None = None
    email_attempts: int = 0
    last_email_error: str | None = None


_RECORD_FIELDS = frozenset(value.name for value in fields(NotificationRecord))


def _detached(record: NotificationRecord) -> NotificationRecord:
    return NotificationRecord(
        **{
            **record.__dict__,
            "delivery_status": {key: dict(value) for key, value in record.delivery_status.items()},
            "template_data": dict(record.template_data),
            "metadata": dict(record.metadata),
        }
    )


def _validate_changes(changes: Mapping[str, object]) -> None:
    unknown = set(changes) - _RECORD_FIELDS
    if unknown:
        raise TypeError(f"unknown notification fields: {', '.join(sorted(unknown))}")
    if "id" in changes:
        raise TypeError("notification id is immutable")


class NotificationQueueRepository(Protocol):
    def reset(self) -> None: ...

    def get(self, record_id: str) -> NotificationRecord | None: ...

    def insert(self, record: NotificationRecord) -> NotificationRecord | None: ...

    def compare_and_set(
        self,
        record_id: str,
        *,
        expected_statuses: Iterable[str],
        changes: Mapping[str, object],
        eligible_at: datetime | None = None,
        claimed_before: datetime | None = None,
    ) -> NotificationRecord | None: ...

    def update_locked(
        self,
        record_id: str,
        mutate: Callable[[NotificationRecord], Mapping[str, object]],
    ) -> NotificationRecord: ...

    def list_eligible(self, *, now: datetime, limit: int) -> list[NotificationRecord]: ...

    def list_records(self, *, statuses: Iterable[str] | None = None) -> list[NotificationRecord]: ...


class InMemoryNotificationQueueRepository:
    """Process-local record store; every write happens under one lock."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._records: dict[str, NotificationRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._records.clear()

    def get(self, record_id: str) -> NotificationRecord | None:
        with self._lock:
            row = self._records.get(record_id)
            return _detached(row) if row is not None else None

    def insert(self, record: NotificationRecord) -> NotificationRecord | None:
        with self._lock:
            if record.id in self._records:
                return None
            self._records[record.id] = _detached(record)
            return _detached(record)

    def compare_and_set(
        self,
        record_id: str,
        *,
        expected_statuses: Iterable[str],
        changes: Mapping[str, object],
        eligible_at: datetime | None = None,
        claimed_before: datetime | None = None,
    ) -> NotificationRecord | None:
        _validate_changes(changes)
        expected = frozenset(expected_statuses)
        with self._lock:
            row = self._records.get(record_id)
            if row is None or row.status not in expected:
                return None
            if eligible_at is not None and not is_eligible(row, eligible_at):
                return None
            if claimed_before is not None and (row.claimed_at is None or row.claimed_at >= claimed_before):
                return None
            updated = NotificationRecord(**{**row.__dict__, **changes, "updated_at": _now_utc()})
            self._records[record_id] = _detached(updated)
            return _detached(updated)

    def update_locked(
        self,
        record_id: str,
        mutate: Callable[[NotificationRecord], Mapping[str, object]],
    ) -> NotificationRecord:
        with self._lock:
            row = self._records.get(record_id)
            if row is None:
                raise RecordNotFoundError(record_id)
            changes = mutate(_detached(row))
            if not changes:
                return _detached(row)
            _validate_changes(changes)
            updated = NotificationRecord(**{**row.__dict__, **changes, "updated_at": _now_utc()})
            self._records[record_id] = _detached(updated)
            return _detached(updated)

    def list_eligible(self, *, now: datetime, limit: int) -> list[NotificationRecord]:
        with self._lock:
            eligible = [row for row in self._records.values() if is_eligible(row, now)]
        eligible.sort(key=selection_key)
        return [_detached(row) for row in eligible[: max(0, limit)]]

    def list_records(self, *, statuses: Iterable[str] | None = None) -> list[NotificationRecord]:
        wanted = frozenset(statuses) if statuses is not None else None
        with self._lock:
            rows = [row for row in self._records.values() if wanted is None or row.status in wanted]
        rows.sort(key=lambda value: (value.created_at, value.id))
        return [_detached(row) for row in rows]


class NotificationQueueBase(DeclarativeBase):
    pass


class _NotificationQueueRow(NotificationQueueBase):
    __tablename__ = "notification_queue"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", index=True)
    delivery_methods: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    delivery_status: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    send_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    template: Mapped[str | None] = mapped_column(String(100), nullable=True)
    template_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    custom_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    notification_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    reminder_schedule: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    reminder_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reminder_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    triggered_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    episode_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    episode_kind: Mapped[str] = mapped_column(String(16), nullable=False, default="delivery")
    reminder_anchor_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    email_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    email_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    email_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_email_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


_JSON_LIST_COLUMNS = {"delivery_methods", "reminder_schedule"}


def _column_values(values: Mapping[str, object]) -> dict[str, object]:
    columns: dict[str, object] = {}
    for key, value in values.items():
        column = "notification_metadata" if key == "metadata" else key
        if key in _JSON_LIST_COLUMNS:
            value = list(value)  # type: ignore[call-overload]
        elif isinstance(value, dict):
            value = {item_key: (dict(item) if isinstance(item, dict) else item) for item_key, item in value.items()}
        elif isinstance(value, datetime):
            value = _coerce_utc(value)
        columns[column] = value
    return columns


def _record_from_row(row: _NotificationQueueRow) -> NotificationRecord:
    return NotificationRecord(
        id=row.id,
        status=row.status,
        delivery_methods=tuple(row.delivery_methods or ()),
        delivery_status={key: dict(value) for key, value in (row.delivery_status or {}).items()},
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        next_attempt_at=_optional_utc(row.next_attempt_at),
        send_after=_coerce_utc(row.send_after),
        expires_at=_optional_utc(row.expires_at),
        template=row.template,
        template_data=dict(row.template_data or {}),
        custom_message=row.custom_message,
        metadata=dict(row.notification_metadata or {}),
        reminder_schedule=tuple(row.reminder_schedule or ()),
        reminder_count=row.reminder_count,
        last_reminder_at=_optional_utc(row.last_reminder_at),
        last_error=row.last_error,
        triggered_by=row.triggered_by,
        triggered_at=_optional_utc(row.triggered_at),
        completed_at=_optional_utc(row.completed_at),
        claimed_at=_optional_utc(row.claimed_at),
        episode_started_at=_optional_utc(row.episode_started_at),
        episode_kind=row.episode_kind,
        reminder_anchor_at=_optional_utc(row.reminder_anchor_at),
        email_sent=row.email_sent,
        email_sent_at=_optional_utc(row.email_sent_at),
        email_id=row.email_id,
        email_attempts=row.email_attempts,
        last_email_error=row.last_email_error,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _eligibility_clauses(now: datetime) -> tuple:
    return (
        _NotificationQueueRow.status.in_(sorted(ELIGIBLE_STATUSES)),
        _NotificationQueueRow.send_after <= now,
        or_(_NotificationQueueRow.expires_at.is_(None), _NotificationQueueRow.expires_at > now),
        _NotificationQueueRow.attempts < _NotificationQueueRow.max_attempts,
    )


class SqlAlchemyNotificationQueueRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for NOTIFICATION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            NotificationQueueBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_NotificationQueueRow).delete()

    def get(self, record_id: str) -> NotificationRecord | None:
        with self._session() as session:
            row = session.get(_NotificationQueueRow, record_id)
            if row is None:
                return None
            return _record_from_row(row)

    def insert(self, record: NotificationRecord) -> NotificationRecord | None:
        values = {value.name: getattr(record, value.name) for value in fields(record)}
        try:
            with self._session() as session:
                with session.begin():
                    row = _NotificationQueueRow(**_column_values(values))
                    session.add(row)
                return _record_from_row(row)
        except IntegrityError:
            return None

    def compare_and_set(
        self,
        record_id: str,
        *,
        expected_statuses: Iterable[str],
        changes: Mapping[str, object],
        eligible_at: datetime | None = None,
        claimed_before: datetime | None = None,
    ) -> NotificationRecord | None:
        _validate_changes(changes)
        statement = update(_NotificationQueueRow).where(
            _NotificationQueueRow.id == record_id,
            _NotificationQueueRow.status.in_(sorted(set(expected_statuses))),
        )
        if eligible_at is not None:
            statement = statement.where(*_eligibility_clauses(_coerce_utc(eligible_at)))
        if claimed_before is not None:
            statement = statement.where(
                _NotificationQueueRow.claimed_at.is_not(None),
                _NotificationQueueRow.claimed_at < _coerce_utc(claimed_before),
            )
        statement = statement.values(**_column_values(changes), updated_at=_now_utc()).execution_options(
            synchronize_session=False
        )
        with self._session() as session:
            with session.begin():
                result = session.execute(statement)
                if result.rowcount != 1:
                    return None
                row = session.execute(
                    select(_NotificationQueueRow).where(_NotificationQueueRow.id == record_id)
                ).scalar_one()
                return _record_from_row(row)

    def update_locked(
        self,
        record_id: str,
        mutate: Callable[[NotificationRecord], Mapping[str, object]],
    ) -> NotificationRecord:
        with self._session() as session:
            with session.begin():
                row = session.execute(
                    select(_NotificationQueueRow).where(_NotificationQueueRow.id == record_id).with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    raise RecordNotFoundError(record_id)
                changes = mutate(_record_from_row(row))
                if changes:
                    _validate_changes(changes)
                    for key, value in _column_values(changes).items():
                        setattr(row, key, value)
                    row.updated_at = _now_utc()
                session.flush()
                return _record_from_row(row)

    def list_eligible(self, *, now: datetime, limit: int) -> list[NotificationRecord]:
        priority = case(SELECTION_PRIORITY, value=_NotificationQueueRow.status, else_=len(SELECTION_PRIORITY) + 1)
        with self._session() as session:
            rows = session.execute(
                select(_NotificationQueueRow)
                .where(*_eligibility_clauses(_coerce_utc(now)))
                .order_by(priority.asc(), _NotificationQueueRow.created_at.asc(), _NotificationQueueRow.id.asc())
                .limit(max(0, limit))
            ).scalars()
            return [_record_from_row(row) for row in rows]

    def list_records(self, *, statuses: Iterable[str] | None = None) -> list[NotificationRecord]:
        query = select(_NotificationQueueRow)
        if statuses is not None:
            query = query.where(_NotificationQueueRow.status.in_(sorted(set(statuses))))
        query = query.order_by(_NotificationQueueRow.created_at.asc(), _NotificationQueueRow.id.asc())
        with self._session() as session:
            return [_record_from_row(row) for row in session.execute(query).scalars()]


def create_queue_repository(*, backend: str, database_url: str) -> NotificationQueueRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyNotificationQueueRepository(database_url)
    if normalized == "inmemory":
        return InMemoryNotificationQueueRepository()
    raise RuntimeError(f"unsupported NOTIFICATION_STORE_BACKEND: {backend}")
