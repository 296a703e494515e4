"""Cron entry point for re-driving webhook events whose retry is due.

Example usages::

    # Every minute from cron/systemd timers.
    python -m scripts.redrive --limit 100

    # Re-drive one dead-lettered event after fixing the underlying issue.
    python -m scripts.redrive --event-id 5f0c9e0d0c7b4c7e9d1f6a2b3c4d5e6f

    # Show what is parked in the dead-letter state.
    python -m scripts.redrive --list dead_letter
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from marketplace_bridge.core.config import get_settings
from marketplace_bridge.core.errors import WebhookEventNotFoundError, WebhookNotRetryableError
from marketplace_bridge.core.logging import configure_logging
from marketplace_bridge.dependencies.clients import get_webhook_dispatcher
from marketplace_bridge.models.webhook import WebhookStatus
from marketplace_bridge.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_DEAD_LETTERED = 1
EXIT_NOT_RETRYABLE = 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Re-drive failed webhook events.")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--event-id", help="Re-drive a single event regardless of schedule.")
    group.add_argument(
        "--list",
        dest="list_status",
        choices=[status.value for status in WebhookStatus],
        help="Print events in the given status and exit.",
    )
    parser.add_argument(
        "--limit", type=int, default=50, help="Maximum due events to process (default: 50)."
    )
    return parser


async def run(dispatcher: WebhookDispatcher, args: argparse.Namespace) -> int:
    if args.list_status:
        for event in dispatcher.list_events(WebhookStatus(args.list_status)):
            summary = event.summary()
            print(
                f"{summary['event_id']}  {summary['status']:<11}  "
                f"retries={summary['retry_count']}  topic={summary['topic']}  "
                f"resource={summary['resource_id']}  error={summary['last_error']}"
            )
        return EXIT_OK

    if args.event_id:
        try:
            status = await dispatcher.retry(args.event_id)
        except (WebhookEventNotFoundError, WebhookNotRetryableError) as exc:
            print(f"Cannot re-drive {args.event_id}: {exc}", file=sys.stderr)
            return EXIT_NOT_RETRYABLE
        print(f"{args.event_id}: {status.value}")
        return EXIT_DEAD_LETTERED if status == WebhookStatus.DEAD_LETTER else EXIT_OK

    results = await dispatcher.redrive_due(limit=args.limit)
    for event_id, status in results:
        print(f"{event_id}: {status.value}")
    dead = sum(1 for _, status in results if status == WebhookStatus.DEAD_LETTER)
    logger.info("Re-drive finished", extra={"processed": len(results), "dead_lettered": dead})
    return EXIT_DEAD_LETTERED if dead else EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(get_settings().log_level)
    return asyncio.run(run(get_webhook_dispatcher(), args))


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
