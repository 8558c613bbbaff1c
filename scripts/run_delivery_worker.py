#!/usr/bin/env python3
"""Run a notification delivery worker against the configured queue store."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from datetime import timedelta
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from notification_queue.config import get_settings, runtime_secret_issues
from notification_queue.queue_store import create_queue_repository
from notification_queue.worker import DeliveryWorker, build_queue, create_channel_sender

logger = logging.getLogger("notification_queue.worker")


def parse_args() -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Poll the notification queue and deliver eligible records.")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit.")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.worker_batch_size,
        help="Records picked per pass (default: NOTIFICATION_WORKER_BATCH_SIZE).",
    )
    parser.add_argument(
        "--poll-seconds",
        type=float,
        default=float(settings.worker_poll_seconds),
        help="Idle wait between passes (default: NOTIFICATION_WORKER_POLL_SECONDS).",
    )
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.batch_size < 1:
        raise SystemExit("--batch-size must be at least 1")
    if args.poll_seconds <= 0:
        raise SystemExit("--poll-seconds must be positive")

    settings = get_settings()
    for issue in runtime_secret_issues(settings):
        logger.warning("runtime secret guard warning: %s", issue)

    repository = create_queue_repository(
        backend=settings.queue_store_backend,
        database_url=settings.database_url,
    )
    components = build_queue(repository, settings)
    sender = create_channel_sender(settings)

    with DeliveryWorker(
        components,
        sender,
        batch_size=args.batch_size,
        channel_timeout=timedelta(seconds=settings.channel_timeout_seconds),
    ) as worker:
        if args.once:
            summary = worker.run_once()
            logger.info("single pass finished: %s", summary)
            return 0

        stop_event = threading.Event()

        def _stop(signum: int, _frame: object) -> None:
            logger.info("received signal %s, stopping after the current pass", signum)
            stop_event.set()

        signal.signal(signal.SIGTERM, _stop)
        signal.signal(signal.SIGINT, _stop)
        worker.run_forever(stop_event, poll_seconds=args.poll_seconds)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
