from __future__ import annotations

import os

import pytest

from notification_queue.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def test_create_app_starts_with_complete_configuration() -> None:
    previous = _set_env(
        {
            "RUNTIME_SECRET_GUARD_MODE": "enforce",
            "NOTIFICATION_ADMIN_TOKEN": "ops-token-001",
            "CHANNEL_SENDER_TYPE": "stub",
            "NOTIFICATION_STORE_BACKEND": "inmemory",
        }
    )
    try:
        app = create_app()
        assert app.title == "Invitation Notification Queue"
        paths = app.openapi()["paths"]
        assert "/api/v1/notifications/queue" in paths
        assert "/api/v1/notifications/{record_id}/claim" in paths
    finally:
        _restore_env(previous)


def test_enforce_mode_blocks_startup_with_remediation() -> None:
    previous = _set_env(
        {
            "RUNTIME_SECRET_GUARD_MODE": "enforce",
            "NOTIFICATION_ADMIN_TOKEN": None,
            "CHANNEL_SENDER_TYPE": "http",
            "CHANNEL_SENDER_API_BASE_URL": None,
            "CHANNEL_SENDER_API_KEY": None,
        }
    )
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "NOTIFICATION_ADMIN_TOKEN is empty" in message
        assert "CHANNEL_SENDER_API_BASE_URL is required" in message
        assert "Remediation" in message
    finally:
        _restore_env(previous)


def test_warn_mode_logs_and_starts(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env({"RUNTIME_SECRET_GUARD_MODE": "warn", "NOTIFICATION_ADMIN_TOKEN": None})
    try:
        with caplog.at_level("WARNING", logger="notification_queue.main"):
            app = create_app()
        assert app.title == "Invitation Notification Queue"
        assert "runtime secret guard warning" in caplog.text
    finally:
        _restore_env(previous)
