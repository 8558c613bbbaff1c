from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Protocol

SendStatus = Literal["sent", "failed"]

DEFAULT_CHANNELS = frozenset({"email", "sms", "push", "chat"})

# metadata key holding the recipient for each channel
RECIPIENT_KEYS = {
    "email": "email",
    "sms": "phone",
    "push": "push_token",
    "chat": "chat_handle",
    "discord": "discord_handle",
}


@dataclass(frozen=True)
class DeliveryPayload:
    record_id: str
    channel: str
    template: str | None
    template_data: dict[str, object] = field(default_factory=dict)
    custom_message: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    episode_kind: str = "delivery"
    reminder_number: int = 0
    attempt: int = 1

    @property
    def recipient(self) -> str:
        key = RECIPIENT_KEYS.get(self.channel, self.channel)
        return str(self.metadata.get(key) or self.metadata.get("recipient") or "")


@dataclass(frozen=True)
class SendResult:
    status: SendStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    def describe_error(self) -> str:
        if self.error_code and self.error_message:
            return f"{self.error_code}: {self.error_message}"
        return self.error_message or self.error_code or "delivery failed"


class ChannelSender(Protocol):
    def send(self, channel: str, payload: DeliveryPayload) -> SendResult: ...


def _parse_channels(value: str | set[str] | frozenset[str]) -> frozenset[str]:
    if isinstance(value, str):
        parsed = {item.strip().lower() for item in value.split(",") if item.strip()}
    else:
        parsed = {item.strip().lower() for item in value if item.strip()}
    return frozenset(parsed) or DEFAULT_CHANNELS


class StubChannelSender:
    def __init__(self, *, enabled: bool, channels: str | set[str] = "email,sms,push,chat") -> None:
        self._enabled = enabled
        self._channels = _parse_channels(channels)
        self.sent: list[DeliveryPayload] = []

    def send(self, channel: str, payload: DeliveryPayload) -> SendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return SendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="sender_disabled",
                error_message="Live channel delivery is disabled",
            )

        if channel not in self._channels:
            return SendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="channel_not_configured",
                error_message=f"Configured channels are {', '.join(sorted(self._channels))}",
            )

        if "fail" in payload.recipient.lower():
            return SendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )

        self.sent.append(payload)
        message_id = f"stub-{channel}-{payload.record_id}-{int(attempted_at.timestamp())}"
        return SendResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class _ChannelSendError(Exception):
    """Internal error raised when a provider HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpChannelSender:
    """Delivers through a messaging gateway that renders templates per channel."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        channels: set[str],
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._channels = _parse_channels(channels)
        self._timeout_seconds = timeout_seconds

    def send(self, channel: str, payload: DeliveryPayload) -> SendResult:
        attempted_at = datetime.now(timezone.utc)

        if channel not in self._channels:
            return SendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="channel_not_configured",
                error_message=(
                    f"Channel '{channel}' is not configured; "
                    f"available channels: {', '.join(sorted(self._channels))}"
                ),
            )

        recipient = payload.recipient
        if not recipient:
            return SendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="recipient_missing",
                error_message=f"Recipient missing for channel {channel}",
            )

        request_payload = {
            "channel": channel,
            "recipient": recipient,
            "template": payload.template,
            "template_data": payload.template_data,
            "message": payload.custom_message,
            "episode": payload.episode_kind,
            "reminder_number": payload.reminder_number,
            "idempotency_key": f"notify-{payload.record_id}-{channel}-{payload.episode_kind}-{payload.attempt}",
        }

        try:
            response_data = self._post(request_payload)
        except _ChannelSendError as exc:
            masked = mask_contact_target(recipient, channel)
            return SendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {masked})",
            )
        message_id = response_data.get("message_id")
        return SendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=message_id if isinstance(message_id, str) else None,
        )

    def _post(self, body: dict[str, object]) -> dict[str, object]:
        """Send a POST request to the gateway messages endpoint."""
        url = f"{self._base_url}/v1/messages/send"
        data = json.dumps(body, default=str).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _ChannelSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _ChannelSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _ChannelSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except json.JSONDecodeError as exc:
            raise _ChannelSendError(
                error_code="invalid_response",
                message=f"Gateway returned invalid JSON: {exc.msg}",
            ) from exc


def mask_contact_target(contact_target: str, channel: str) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if channel == "email" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel == "sms":
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
