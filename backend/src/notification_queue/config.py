from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_seconds_tuple(value: str | None, default: tuple[int, ...]) -> tuple[int, ...]:
    if value is None:
        return default
    parsed: list[int] = []
    for item in _as_csv_tuple(value):
        try:
            seconds = int(item)
        except ValueError:
            return default
        if seconds < 0:
            return default
        parsed.append(seconds)
    return tuple(parsed)


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


DEFAULT_BACKOFF_SECONDS = (300, 1800, 7200, 21600)


@dataclass(frozen=True)
class Settings:
    app_name: str = "Invitation Notification Queue"
    api_prefix: str = "/api/v1"
    queue_store_backend: str = "inmemory"
    database_url: str = ""
    default_max_attempts: int = 3
    backoff_seconds: tuple[int, ...] = DEFAULT_BACKOFF_SECONDS
    # "all": every requested channel must succeed; "any": first success completes.
    completion_policy: str = "all"
    processing_lease_seconds: int = 900
    channel_timeout_seconds: int = 30
    worker_batch_size: int = 25
    worker_poll_seconds: int = 10
    stats_recent_failures: int = 10
    reminder_template: str = "invitation_reminder"
    sender_type: str = "stub"
    sender_enabled: bool = False
    sender_channels: str = "email,sms,push,chat"
    sender_api_base_url: str = ""
    sender_api_key: str = ""
    sender_timeout_seconds: int = 30
    admin_token: str = ""
    runtime_secret_guard_mode: str = "warn"

    @property
    def backoff_schedule(self) -> tuple[timedelta, ...]:
        return tuple(timedelta(seconds=value) for value in self.backoff_seconds)

    @property
    def processing_lease(self) -> timedelta:
        return timedelta(seconds=self.processing_lease_seconds)

    def sender_channel_set(self) -> set[str]:
        return {channel.lower() for channel in _as_csv_tuple(self.sender_channels)}


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("NOTIFICATION_APP_NAME", "Invitation Notification Queue"),
        api_prefix=os.getenv("NOTIFICATION_API_PREFIX", "/api/v1"),
        queue_store_backend=os.getenv("NOTIFICATION_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        default_max_attempts=max(1, _as_int(os.getenv("NOTIFICATION_DEFAULT_MAX_ATTEMPTS"), 3)),
        backoff_seconds=_as_seconds_tuple(os.getenv("NOTIFICATION_BACKOFF_SECONDS"), DEFAULT_BACKOFF_SECONDS),
        completion_policy=_normalize_mode(
            os.getenv("NOTIFICATION_COMPLETION_POLICY"),
            default="all",
            allowed={"all", "any"},
        ),
        processing_lease_seconds=_as_int(os.getenv("NOTIFICATION_PROCESSING_LEASE_SECONDS"), 900),
        channel_timeout_seconds=_as_int(os.getenv("NOTIFICATION_CHANNEL_TIMEOUT_SECONDS"), 30),
        worker_batch_size=_as_int(os.getenv("NOTIFICATION_WORKER_BATCH_SIZE"), 25),
        worker_poll_seconds=_as_int(os.getenv("NOTIFICATION_WORKER_POLL_SECONDS"), 10),
        stats_recent_failures=_as_int(os.getenv("NOTIFICATION_STATS_RECENT_FAILURES"), 10),
        reminder_template=os.getenv("NOTIFICATION_REMINDER_TEMPLATE", "invitation_reminder"),
        sender_type=_normalize_mode(os.getenv("CHANNEL_SENDER_TYPE"), default="stub", allowed={"stub", "http"}),
        sender_enabled=_as_bool(os.getenv("CHANNEL_SENDER_ENABLED"), False),
        sender_channels=os.getenv("CHANNEL_SENDER_CHANNELS", "email,sms,push,chat"),
        sender_api_base_url=os.getenv("CHANNEL_SENDER_API_BASE_URL", ""),
        sender_api_key=os.getenv("CHANNEL_SENDER_API_KEY", ""),
        sender_timeout_seconds=_as_int(os.getenv("CHANNEL_SENDER_TIMEOUT_SECONDS"), 30),
        admin_token=os.getenv("NOTIFICATION_ADMIN_TOKEN", ""),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if not settings.admin_token.strip():
        issues.append("NOTIFICATION_ADMIN_TOKEN is empty; admin endpoints are unauthenticated")
    if settings.queue_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when NOTIFICATION_STORE_BACKEND=postgres")
    if settings.sender_type == "http":
        if not settings.sender_api_base_url.strip():
            issues.append("CHANNEL_SENDER_API_BASE_URL is required when CHANNEL_SENDER_TYPE=http")
        if not settings.sender_api_key.strip():
            issues.append("CHANNEL_SENDER_API_KEY is required when CHANNEL_SENDER_TYPE=http")
    if not settings.backoff_seconds:
        issues.append("NOTIFICATION_BACKOFF_SECONDS must list at least one delay")
    return tuple(issues)
