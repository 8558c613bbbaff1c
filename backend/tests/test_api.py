from __future__ import annotations

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from notification_queue import api as api_module
from notification_queue.main import create_app
from notification_queue.senders import StubChannelSender

BASE = "/api/v1/notifications"


def _enqueue_payload(record_id: str = "inv-001", **overrides) -> dict:
    payload = {
        "record_id": record_id,
        "template": "invitation_default",
        "delivery_methods": ["email"],
        "template_data": {"event": "Spring Gala"},
        "metadata": {"email": "guest@example.com", "phone": "+15555550123"},
    }
    payload.update(overrides)
    return payload


def _client() -> TestClient:
    api_module.reset_runtime_state_for_tests()
    api_module.channel_sender = StubChannelSender(enabled=True, channels="email,sms")
    return TestClient(create_app())


def test_notification_lifecycle() -> None:
    client = _client()

    queued = client.post(f"{BASE}/queue", json=_enqueue_payload())
    assert queued.status_code == 201
    queued_data = queued.json()
    assert queued_data["id"] == "inv-001"
    assert queued_data["status"] == "pending"
    assert queued_data["delivery_methods"] == ["email"]
    assert queued_data["attempts"] == 0
    assert queued_data["max_attempts"] == 3

    picked = client.post(f"{BASE}/worker/pick", json={"limit": 10})
    assert picked.status_code == 200
    assert picked.json()["count"] == 1
    assert picked.json()["records"][0]["outstanding_channels"] == ["email"]

    claimed = client.post(f"{BASE}/inv-001/claim")
    assert claimed.status_code == 200
    assert claimed.json()["status"] == "processing"

    contested = client.post(f"{BASE}/inv-001/claim")
    assert contested.status_code == 409
    assert contested.json()["detail"] == "already_claimed_or_ineligible"

    delivered = client.post(
        f"{BASE}/inv-001/deliveries/email/success",
        json={"provider_message_id": "msg-1"},
    )
    assert delivered.status_code == 200
    delivered_data = delivered.json()
    assert delivered_data["status"] == "sent"
    assert delivered_data["delivery_status"]["email"]["provider_message_id"] == "msg-1"
    assert delivered_data["email_sent"] is True

    fetched = client.get(f"{BASE}/inv-001")
    assert fetched.status_code == 200
    assert fetched.json()["status"] == "sent"


def test_failure_report_schedules_retry() -> None:
    client = _client()
    client.post(f"{BASE}/queue", json=_enqueue_payload("S", delivery_methods=["email", "sms"]))
    client.post(f"{BASE}/S/claim")

    client.post(f"{BASE}/S/deliveries/email/success", json={"provider_message_id": "m1"})
    failed = client.post(f"{BASE}/S/deliveries/sms/failure", json={"error": "invalid number"})

    assert failed.status_code == 200
    data = failed.json()
    assert data["status"] == "retry_scheduled"
    assert data["attempts"] == 1
    assert data["last_error"] == "invalid number"
    assert data["delivery_status"]["email"]["status"] == "sent"
    assert data["next_attempt_at"] is not None


def test_outcome_errors_map_to_http_statuses() -> None:
    client = _client()
    client.post(f"{BASE}/queue", json=_enqueue_payload())

    not_claimed = client.post(f"{BASE}/inv-001/deliveries/email/success", json={})
    assert not_claimed.status_code == 409

    client.post(f"{BASE}/inv-001/claim")
    wrong_channel = client.post(f"{BASE}/inv-001/deliveries/sms/failure", json={"error": "x"})
    assert wrong_channel.status_code == 422

    missing = client.post(f"{BASE}/missing/deliveries/email/success", json={})
    assert missing.status_code == 404


def test_enqueue_validation() -> None:
    client = _client()

    assert client.post(f"{BASE}/queue", json=_enqueue_payload(delivery_methods=[])).status_code == 422
    assert client.post(f"{BASE}/queue", json=_enqueue_payload(delivery_methods=["fax"])).status_code == 422
    assert (
        client.post(f"{BASE}/queue", json=_enqueue_payload(delivery_methods=["email", "email"])).status_code
        == 422
    )
    assert client.post(f"{BASE}/queue", json=_enqueue_payload(reminder_schedule=["soon"])).status_code == 422
    assert client.post(f"{BASE}/queue", json=_enqueue_payload(record_id="  ")).status_code == 422


def test_requeue_while_processing_conflicts() -> None:
    client = _client()
    client.post(f"{BASE}/queue", json=_enqueue_payload())
    client.post(f"{BASE}/inv-001/claim")

    response = client.post(f"{BASE}/queue", json=_enqueue_payload())

    assert response.status_code == 409


def test_admin_controls() -> None:
    client = _client()
    client.post(f"{BASE}/queue", json=_enqueue_payload("later", delay_seconds=3600))
    client.post(f"{BASE}/queue", json=_enqueue_payload("paused"))

    paused = client.post(f"{BASE}/paused/pause")
    assert paused.status_code == 200
    assert paused.json()["status"] == "paused"
    assert client.post(f"{BASE}/paused/pause").status_code == 409

    resumed = client.post(f"{BASE}/paused/resume")
    assert resumed.json()["status"] == "pending"

    triggered = client.post(f"{BASE}/trigger-pending")
    assert triggered.status_code == 200
    assert triggered.json()["record_ids"] == ["later"]

    cancelled = client.post(f"{BASE}/later/cancel", json={"reason": "event postponed"})
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["last_error"] == "event postponed"

    retried = client.post(f"{BASE}/later/force-retry", json={"clear_expiry": True})
    assert retried.status_code == 200
    assert retried.json()["status"] == "pending"
    assert retried.json()["expires_at"] is None

    reminders = client.post(f"{BASE}/later/reminders", json={"days": [3, 7]})
    assert reminders.status_code == 200
    assert reminders.json()["reminder_schedule"] == ["+3 days", "+7 days"]

    assert client.post(f"{BASE}/missing/cancel", json={}).status_code == 404
    assert client.post(f"{BASE}/missing/pause").status_code == 404
    assert client.get(f"{BASE}/missing").status_code == 404
    assert client.post(f"{BASE}/later/reminders", json={"days": [0]}).status_code == 422


def test_stats_endpoint() -> None:
    client = _client()
    client.post(f"{BASE}/queue", json=_enqueue_payload("a", delivery_methods=["email", "sms"]))
    client.post(f"{BASE}/queue", json=_enqueue_payload("b", max_attempts=1))
    client.post(f"{BASE}/b/claim")
    client.post(f"{BASE}/b/deliveries/email/failure", json={"error": "bounced"})

    stats = client.get(f"{BASE}/stats")

    assert stats.status_code == 200
    data = stats.json()
    assert data["total_notifications"] == 2
    assert data["by_status"] == {"pending": 1, "failed": 1}
    assert data["failed_count"] == 1
    assert data["average_attempts"] == 0.5
    assert data["delivery_methods_usage"] == {"email": 2, "sms": 1}
    assert data["recent_failures"][0]["id"] == "b"
    assert data["recent_failures"][0]["error"] == "bounced"


def test_worker_endpoints_run_a_delivery_pass() -> None:
    client = _client()
    client.post(f"{BASE}/queue", json=_enqueue_payload("inv-001", delivery_methods=["email", "sms"]))

    assert client.post(f"{BASE}/worker/sweep").json() == {"requeued_ids": [], "failed_ids": []}
    assert client.post(f"{BASE}/worker/reminders").json() == {"reopened_count": 0, "record_ids": []}

    summary = client.post(f"{BASE}/worker/run-once")
    assert summary.status_code == 200
    assert summary.json()["sent"] == 1
    assert summary.json()["claimed"] == 1

    record = client.get(f"{BASE}/inv-001").json()
    assert record["status"] == "sent"
    assert set(record["delivery_status"]) == {"email", "sms"}


def test_admin_token_is_required_when_configured(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    monkeypatch.setattr(api_module, "_settings", replace(api_module._settings, admin_token="ops-token-001"))

    assert client.get(f"{BASE}/stats").status_code == 401
    assert client.get(f"{BASE}/stats", headers={"Authorization": "Bearer wrong"}).status_code == 401
    authorized = client.get(f"{BASE}/stats", headers={"Authorization": "Bearer ops-token-001"})
    assert authorized.status_code == 200
