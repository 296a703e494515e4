"""
Inbound notification processing with bounded retries.

Every delivery is stored verbatim before anything else happens. Signature
failures are recorded and never processed. Valid events are resolved against
the remote API, mapped onto an internal order status and reconciled with what
is stored. Failures back off exponentially until the retry ceiling, after which
the event is dead-lettered for an administrator to re-drive.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping

from marketplace_bridge.clients.sqlite_store import SQLiteStore
from marketplace_bridge.core.config import WebhookSettings
from marketplace_bridge.core.errors import (
    ResourceNotFoundError,
    WebhookEventNotFoundError,
    WebhookNotRetryableError,
    WebhookPayloadError,
)
from marketplace_bridge.models.webhook import (
    Order,
    ResolvedResource,
    WebhookEvent,
    WebhookStatus,
)
from marketplace_bridge.services.order_status import map_external_status, reconcile
from marketplace_bridge.services.orders import OrderRepository
from marketplace_bridge.services.rate_limit import WarningDeduplicator
from marketplace_bridge.services.signature import SignatureVerifier

logger = logging.getLogger(__name__)

ResourceResolver = Callable[[str], Awaitable[ResolvedResource]]

SIGNATURE_HEADER = "x-signature"
REQUEST_ID_HEADER = "x-request-id"

_RESOURCE_SUFFIX_RE = re.compile(r"(\d+)/?$")
_EVENT_PARTITION = "webhook"


def topic_family(topic: str | None) -> str | None:
    """Group notification topics by the resolver that handles them."""
    if not topic:
        return None
    normalized = topic.strip().lower()
    if normalized == "payment" or normalized.startswith("payment."):
        return "payment"
    if normalized in ("orders", "orders_v2") or normalized.startswith("orders."):
        return "orders"
    return None


def _scalar(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def parse_notification(
    payload: Dict[str, Any], query: Mapping[str, str]
) -> tuple[str | None, str | None]:
    """Return ``(topic, resource_id)`` from a decoded notification body."""
    topic = None
    for key in ("type", "topic", "action"):
        topic = _scalar(payload.get(key))
        if topic:
            break
    topic = topic or _scalar(query.get("topic")) or _scalar(query.get("type"))

    resource_id = None
    data = payload.get("data")
    if isinstance(data, dict):
        resource_id = _scalar(data.get("id"))
    resource_id = resource_id or _scalar(payload.get("id"))
    if not resource_id:
        resource = _scalar(payload.get("resource"))
        match = _RESOURCE_SUFFIX_RE.search(resource) if resource else None
        resource_id = match.group(1) if match else None
    resource_id = resource_id or _scalar(query.get("data.id"))
    return topic, resource_id


def _decode_payload(raw_body: bytes) -> Dict[str, Any] | None:
    try:
        parsed = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _is_actionable(event: WebhookEvent) -> bool:
    return event.signature_valid is True and bool(event.topic) and bool(event.resource_id)


@dataclass(slots=True, frozen=True)
class WebhookReceipt:
    """What the HTTP layer needs to acknowledge a delivery."""

    event: WebhookEvent
    accepted: bool
    message: str


class WebhookDispatcher:
    """Store, verify, apply and re-drive payment notifications."""

    def __init__(
        self,
        store: SQLiteStore,
        orders: OrderRepository,
        verifier: SignatureVerifier,
        settings: WebhookSettings,
        *,
        resolvers: Mapping[str, ResourceResolver],
        warnings: WarningDeduplicator | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._orders = orders
        self._verifier = verifier
        self._settings = settings
        self._resolvers = dict(resolvers)
        self._warnings = warnings or WarningDeduplicator()
        self._clock = clock

    def get(self, event_id: str) -> WebhookEvent | None:
        record = self._store.get_item(
            partition_key=_EVENT_PARTITION, sort_key=f"event#{event_id}"
        )
        if not record:
            return None
        record.pop("pk", None)
        record.pop("sk", None)
        return WebhookEvent.model_validate(record)

    def list_events(self, status: WebhookStatus | None = None) -> list[WebhookEvent]:
        records = self._store.list_items_with_prefix(
            partition_key=_EVENT_PARTITION, sort_key_prefix="event#"
        )
        events = []
        for record in records:
            record.pop("pk", None)
            record.pop("sk", None)
            event = WebhookEvent.model_validate(record)
            if status is None or event.status == status:
                events.append(event)
        events.sort(key=lambda item: item.received_at, reverse=True)
        return events

    def _save(self, event: WebhookEvent) -> None:
        event.updated_at = self._clock()
        record = event.model_dump(mode="json")
        record.update({"pk": _EVENT_PARTITION, "sk": f"event#{event.event_id}"})
        self._store.put_item(record)

    def receive(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        query: Mapping[str, str] | None = None,
    ) -> WebhookReceipt:
        """
        Capture a delivery and decide whether it may be processed.

        Raises ``WebhookPayloadError`` for a signed body that is not a JSON
        object or lacks a topic or resource id. Raises
        ``SignatureConfigurationError`` when no shared secret is configured.
        """
        query = dict(query or {})
        event = WebhookEvent(
            raw_body=raw_body.decode("utf-8", errors="replace"),
            query=query,
            request_id=headers.get(REQUEST_ID_HEADER),
            signature_header=headers.get(SIGNATURE_HEADER),
            received_at=self._clock(),
        )
        payload = _decode_payload(raw_body)
        if payload is not None:
            event.topic, event.resource_id = parse_notification(payload, query)
        self._save(event)

        check = self._verifier.verify_detailed(
            raw_body,
            event.signature_header,
            self._settings.shared_secret,
            request_id=event.request_id,
            query=query,
        )
        event.signature_valid = check.valid
        event.signature_strategy = check.strategy
        if not check.valid:
            self._reject(event, f"invalid signature ({check.reason})")
            logger.warning(
                "Rejected webhook with invalid signature",
                extra={
                    "event_id": event.event_id,
                    "request_id": event.request_id,
                    "reason": check.reason,
                },
            )
            return WebhookReceipt(event=event, accepted=False, message="Signature rejected")

        if payload is None:
            self._reject(event, "malformed payload")
            raise WebhookPayloadError("Webhook body must be a JSON object.")
        if not event.topic or not event.resource_id:
            self._reject(event, "missing topic or resource id")
            raise WebhookPayloadError("Webhook body lacks a topic or resource identifier.")

        self._save(event)
        logger.info(
            "Accepted webhook",
            extra={
                "event_id": event.event_id,
                "topic": event.topic,
                "resource_id": event.resource_id,
                "strategy": check.strategy,
            },
        )
        return WebhookReceipt(event=event, accepted=True, message="Notification received")

    def _reject(self, event: WebhookEvent, reason: str) -> None:
        # No next_attempt_at keeps the event out of scheduled re-drives.
        event.status = WebhookStatus.FAILED
        event.next_attempt_at = None
        event.last_error = reason
        self._save(event)

    async def process(self, event_id: str) -> WebhookStatus:
        event = self.get(event_id)
        if event is None:
            raise WebhookEventNotFoundError(event_id)
        if event.status == WebhookStatus.PROCESSED or not _is_actionable(event):
            return event.status
        return await self._attempt(event)

    async def retry(self, event_id: str) -> WebhookStatus:
        """Admin re-drive of one event, ignoring its schedule."""
        event = self.get(event_id)
        if event is None:
            raise WebhookEventNotFoundError(event_id)
        if event.signature_valid is not True:
            raise WebhookNotRetryableError("Event failed signature verification.")
        if not _is_actionable(event):
            raise WebhookNotRetryableError("Event payload lacks a topic or resource id.")
        if event.status == WebhookStatus.PROCESSED:
            raise WebhookNotRetryableError("Event has already been processed.")
        logger.info(
            "Re-driving webhook event",
            extra={"event_id": event_id, "status": event.status.value},
        )
        return await self._attempt(event)

    async def redrive_due(
        self, now: datetime | None = None, *, limit: int = 50
    ) -> list[tuple[str, WebhookStatus]]:
        """Process failed events whose backoff has elapsed."""
        moment = now or self._clock()
        due = [
            event
            for event in self.list_events(WebhookStatus.FAILED)
            if _is_actionable(event)
            and event.next_attempt_at is not None
            and event.next_attempt_at <= moment
        ]
        due.sort(key=lambda item: item.next_attempt_at or moment)
        results: list[tuple[str, WebhookStatus]] = []
        for event in due[:limit]:
            results.append((event.event_id, await self._attempt(event)))
        if results:
            logger.info("Re-drive pass completed", extra={"processed": len(results)})
        return results

    async def _attempt(self, event: WebhookEvent) -> WebhookStatus:
        was_dead_letter = event.status == WebhookStatus.DEAD_LETTER
        family = topic_family(event.topic)
        if family is None:
            logger.warning(
                "Ignoring webhook with unsupported topic",
                extra={"event_id": event.event_id, "topic": event.topic},
            )
            return self._succeed(event, "ignored: unsupported topic")

        resolver = self._resolvers.get(family)
        if resolver is None:
            return self._succeed(event, f"ignored: no resolver for {family}")

        try:
            resolved = await resolver(event.resource_id or "")
            outcome = self._apply(event, family, resolved)
        except Exception as exc:  # noqa: BLE001
            return self._fail(event, exc, dead_letter=was_dead_letter)
        return self._succeed(event, outcome)

    def _apply(self, event: WebhookEvent, family: str, resolved: ResolvedResource) -> str:
        incoming = map_external_status(family, resolved.external_status)
        if incoming is None:
            warning_key = f"{family}:{resolved.external_status}"
            if self._warnings.should_log(warning_key):
                logger.warning(
                    "Unmapped external status; order left unchanged",
                    extra={
                        "family": family,
                        "external_status": resolved.external_status,
                        "resource_id": resolved.resource_id,
                    },
                )
            return f"unmapped status {resolved.external_status!r}"

        marker_sk = f"applied#{family}#{resolved.resource_id}#{incoming.value}"
        if self._store.get_item(partition_key=_EVENT_PARTITION, sort_key=marker_sk):
            logger.info(
                "Duplicate webhook absorbed",
                extra={"event_id": event.event_id, "marker": marker_sk},
            )
            return "duplicate"

        if not resolved.external_reference:
            logger.warning(
                "Resolved resource carries no order reference",
                extra={"event_id": event.event_id, "resource_id": resolved.resource_id},
            )
            return "ignored: no order reference"

        order = self._find_order(resolved.external_reference)
        if order is None:
            raise ResourceNotFoundError(
                f"No order found for reference {resolved.external_reference}"
            )

        previous = order.status
        order.status = reconcile(order.status, incoming)
        if order.status != previous:
            order.external_status = resolved.external_status
            if family == "payment":
                order.payment_id = resolved.resource_id
            self._orders.save(order)
            outcome = f"order {order.order_id}: {previous.value} -> {order.status.value}"
        else:
            outcome = f"order {order.order_id}: kept {previous.value}"

        self._store.put_item_if_absent(
            {
                "pk": _EVENT_PARTITION,
                "sk": marker_sk,
                "event_id": event.event_id,
                "order_id": order.order_id,
                "applied_at": self._clock().isoformat(),
            }
        )
        logger.info(
            "Applied webhook to order",
            extra={"event_id": event.event_id, "outcome": outcome},
        )
        return outcome

    def _find_order(self, reference: str) -> Order | None:
        return self._orders.get_by_external_reference(reference) or self._orders.get(reference)

    def _succeed(self, event: WebhookEvent, outcome: str) -> WebhookStatus:
        now = self._clock()
        event.status = WebhookStatus.PROCESSED
        event.outcome = outcome
        event.processed_at = now
        event.next_attempt_at = None
        event.last_error = None
        self._save(event)
        return event.status

    def _fail(self, event: WebhookEvent, exc: Exception, *, dead_letter: bool) -> WebhookStatus:
        event.retry_count += 1
        event.last_error = f"{type(exc).__name__}: {exc}"
        if dead_letter or event.retry_count >= self._settings.max_retries:
            event.status = WebhookStatus.DEAD_LETTER
            event.next_attempt_at = None
            self._save(event)
            logger.error(
                "Webhook event dead-lettered",
                extra={
                    "event_id": event.event_id,
                    "topic": event.topic,
                    "resource_id": event.resource_id,
                    "retry_count": event.retry_count,
                    "error": event.last_error,
                },
            )
            return event.status

        event.status = WebhookStatus.FAILED
        event.next_attempt_at = self._clock() + self.backoff(event.retry_count)
        self._save(event)
        logger.warning(
            "Webhook processing failed; retry scheduled",
            extra={
                "event_id": event.event_id,
                "retry_count": event.retry_count,
                "next_attempt_at": event.next_attempt_at.isoformat(),
                "error": event.last_error,
            },
        )
        return event.status

    def backoff(self, retry_count: int) -> timedelta:
        seconds = self._settings.retry_base_seconds * 2 ** max(retry_count - 1, 0)
        return timedelta(seconds=min(seconds, self._settings.retry_max_seconds))


__all__ = [
    "REQUEST_ID_HEADER",
    "ResourceResolver",
    "SIGNATURE_HEADER",
    "WebhookDispatcher",
    "WebhookReceipt",
    "parse_notification",
    "topic_family",
]
