#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    candidate = (explicit_value or os.getenv("NOTIFICATION_API_BASE_URL", "") or "http://localhost:8000").strip()
    if candidate.endswith("/notifications"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1/notifications"


def _request_json(
    method: str,
    base_url: str,
    path: str,
    *,
    payload: dict[str, Any] | None = None,
    token: str | None = None,
) -> dict[str, Any]:
    body = None if payload is None else json.dumps(payload).encode("utf-8")
    headers: dict[str, str] = {"Accept": "application/json"}
    if payload is not None:
        headers["Content-Type"] = "application/json"
    if token:
        headers["Authorization"] = f"Bearer {token}"

    request = urllib.request.Request(
        f"{base_url}/{path.lstrip('/')}",
        data=body,
        headers=headers,
        method=method,
    )
    try:
        with urllib.request.urlopen(request, timeout=30) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"{method} {path} failed with {exc.code}: {detail}") from exc


def _parse_key_values(values: list[str]) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for item in values:
        if "=" not in item:
            raise SystemExit(f"expected KEY=VALUE, got {item!r}")
        key, value = item.split("=", 1)
        parsed[key.strip()] = value.strip()
    return parsed


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Operate the invitation notification queue over its admin API.")
    parser.add_argument("--api-base-url", default=None, help="Host root or full /api/v1/notifications prefix.")
    parser.add_argument(
        "--admin-token",
        default=None,
        help="Bearer token. Defaults to NOTIFICATION_ADMIN_TOKEN from environment/.env.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    enqueue = commands.add_parser("enqueue", help="Queue (or re-queue) a notification.")
    enqueue.add_argument("record_id")
    enqueue.add_argument("--template", required=True)
    enqueue.add_argument("--method", dest="methods", action="append", default=None, help="Repeat per channel.")
    enqueue.add_argument("--data", action="append", default=[], help="Template data as KEY=VALUE.")
    enqueue.add_argument("--meta", action="append", default=[], help="Recipient metadata as KEY=VALUE.")
    enqueue.add_argument("--message", default=None, help="Custom message body.")
    enqueue.add_argument("--delay-seconds", type=int, default=0)
    enqueue.add_argument("--max-attempts", type=int, default=None)
    enqueue.add_argument("--reminder", dest="reminders", action="append", default=None, help="Offset like '+3 days'.")

    cancel = commands.add_parser("cancel", help="Cancel a notification.")
    cancel.add_argument("record_id")
    cancel.add_argument("--reason", default="Cancelled by admin")

    force_retry = commands.add_parser("force-retry", help="Reset a notification for immediate resend.")
    force_retry.add_argument("record_id")
    force_retry.add_argument("--clear-expiry", action="store_true")

    commands.add_parser("stats", help="Print queue statistics.")
    commands.add_parser("trigger-pending", help="Pull every deferred pending send forward to now.")
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    api_base_url = _resolve_api_base_url(args.api_base_url)
    token = (args.admin_token or os.getenv("NOTIFICATION_ADMIN_TOKEN", "")).strip() or None

    if args.command == "enqueue":
        payload: dict[str, Any] = {
            "record_id": args.record_id,
            "template": args.template,
            "delivery_methods": args.methods or ["email"],
            "template_data": _parse_key_values(args.data),
            "delay_seconds": args.delay_seconds,
            "triggered_by": "queue_admin",
        }
        if args.meta:
            payload["metadata"] = _parse_key_values(args.meta)
        if args.message:
            payload["custom_message"] = args.message
        if args.max_attempts is not None:
            payload["max_attempts"] = args.max_attempts
        if args.reminders:
            payload["reminder_schedule"] = args.reminders
        result = _request_json("POST", api_base_url, "queue", payload=payload, token=token)
    elif args.command == "cancel":
        result = _request_json(
            "POST", api_base_url, f"{args.record_id}/cancel", payload={"reason": args.reason}, token=token
        )
    elif args.command == "force-retry":
        result = _request_json(
            "POST",
            api_base_url,
            f"{args.record_id}/force-retry",
            payload={"clear_expiry": args.clear_expiry},
            token=token,
        )
    elif args.command == "trigger-pending":
        result = _request_json("POST", api_base_url, "trigger-pending", token=token)
    else:
        result = _request_json("GET", api_base_url, "stats", token=token)

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
