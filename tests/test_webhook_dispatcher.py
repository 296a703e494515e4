try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import hashlib
import hmac
import json
import logging
from datetime import timedelta

import pytest

from marketplace_bridge.clients.sqlite_store import SQLiteStore
from marketplace_bridge.core.config import WebhookSettings
from marketplace_bridge.core.errors import (
    ExternalApiError,
    ResourceNotFoundError,
    WebhookEventNotFoundError,
    WebhookNotRetryableError,
    WebhookPayloadError,
)
from marketplace_bridge.models.webhook import OrderStatus, ResolvedResource, WebhookStatus
from marketplace_bridge.services.orders import OrderRepository
from marketplace_bridge.services.rate_limit import WarningDeduplicator
from marketplace_bridge.services.signature import SignatureVerifier, build_timestamped_message
from marketplace_bridge.services.webhook_dispatcher import (
    WebhookDispatcher,
    parse_notification,
    topic_family,
)

SECRET = "whsec_dispatch"


class FakePaymentsResolver:
    """Answers payment lookups from a scripted table."""

    def __init__(self) -> None:
        self.statuses: dict[str, str] = {}
        self.references: dict[str, str] = {}
        self.failures: list[Exception] = []
        self.calls: list[str] = []

    async def __call__(self, resource_id: str) -> ResolvedResource:
        self.calls.append(resource_id)
        if self.failures:
            raise self.failures.pop(0)
        return ResolvedResource(
            resource_id=resource_id,
            external_reference=self.references.get(resource_id),
            external_status=self.statuses.get(resource_id),
        )


def _signed(payload: dict, *, request_id: str = "req-1", ts: str = "1714564800"):
    body = json.dumps(payload).encode()
    data = payload.get("data") or {}
    message = build_timestamped_message(
        resource_id=str(data.get("id")), request_id=request_id, timestamp=ts
    )
    digest = hmac.new(SECRET.encode(), message.encode(), hashlib.sha256).hexdigest()
    headers = {"x-signature": f"ts={ts},v1={digest}", "x-request-id": request_id}
    return body, headers


def _simple(body: bytes) -> dict:
    digest = hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()
    return {"x-signature": f"sha256={digest}"}


@pytest.fixture()
def store(tmp_path) -> SQLiteStore:
    return SQLiteStore(str(tmp_path / "webhooks.db"))


@pytest.fixture()
def orders(store) -> OrderRepository:
    return OrderRepository(store)


@pytest.fixture()
def resolver() -> FakePaymentsResolver:
    resolver = FakePaymentsResolver()
    resolver.references["987654321"] = "ORD-1"
    resolver.statuses["987654321"] = "approved"
    return resolver


@pytest.fixture()
def dispatcher(store, orders, resolver, clock) -> WebhookDispatcher:
    settings = WebhookSettings(
        shared_secret=SECRET,
        max_retries=3,
        retry_base_seconds=30,
        retry_max_seconds=3600,
    )
    return WebhookDispatcher(
        store,
        orders,
        SignatureVerifier(),
        settings,
        resolvers={"payment": resolver},
        warnings=WarningDeduplicator(interval_seconds=300),
        clock=clock,
    )


PAYMENT = {"type": "payment", "action": "payment.updated", "data": {"id": "987654321"}}


async def _deliver(dispatcher, payload=PAYMENT, **kwargs) -> WebhookStatus:
    body, headers = _signed(payload, **kwargs)
    receipt = dispatcher.receive(body, headers, {})
    assert receipt.accepted is True
    return await dispatcher.process(receipt.event.event_id)


@pytest.mark.asyncio
async def test_valid_payment_moves_order_to_paid(dispatcher, orders) -> None:
    orders.create(order_id="order-1", external_reference="ORD-1")

    status = await _deliver(dispatcher)

    assert status == WebhookStatus.PROCESSED
    order = orders.get("order-1")
    assert order.status == OrderStatus.PAID
    assert order.payment_id == "987654321"
    assert order.external_status == "approved"


@pytest.mark.asyncio
async def test_replayed_webhook_is_absorbed(dispatcher, orders, store) -> None:
    orders.create(order_id="order-1", external_reference="ORD-1")

    await _deliver(dispatcher)
    first_update = orders.get("order-1").updated_at
    status = await _deliver(dispatcher)

    assert status == WebhookStatus.PROCESSED
    order = orders.get("order-1")
    assert order.status == OrderStatus.PAID
    assert order.updated_at == first_update
    outcomes = [event.outcome for event in dispatcher.list_events()]
    assert "duplicate" in outcomes


@pytest.mark.asyncio
async def test_late_pending_does_not_regress_paid(dispatcher, orders, resolver) -> None:
    orders.create(order_id="order-1", external_reference="ORD-1")
    await _deliver(dispatcher)

    resolver.statuses["987654321"] = "pending"
    await _deliver(dispatcher, request_id="req-2")

    assert orders.get("order-1").status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_cancelled_order_ignores_later_approval(dispatcher, orders, resolver) -> None:
    orders.create(order_id="order-1", external_reference="ORD-1")
    resolver.statuses["987654321"] = "cancelled"
    await _deliver(dispatcher)

    resolver.statuses["987654321"] = "approved"
    await _deliver(dispatcher, request_id="req-2")

    assert orders.get("order-1").status == OrderStatus.CANCELLED


@pytest.mark.asyncio
async def test_invalid_signature_is_recorded_and_never_applied(
    dispatcher, orders, resolver
) -> None:
    orders.create(order_id="order-1", external_reference="ORD-1")
    body, headers = _signed(PAYMENT)
    headers["x-signature"] = headers["x-signature"][:-1] + (
        "0" if not headers["x-signature"].endswith("0") else "1"
    )

    receipt = dispatcher.receive(body, headers, {})

    assert receipt.accepted is False
    event = dispatcher.get(receipt.event.event_id)
    assert event.status == WebhookStatus.FAILED
    assert event.signature_valid is False
    assert event.retry_count == 0
    assert event.next_attempt_at is None
    assert event.last_error.startswith("invalid signature")
    assert event.raw_body == body.decode()

    assert await dispatcher.process(event.event_id) == WebhookStatus.FAILED
    with pytest.raises(WebhookNotRetryableError):
        await dispatcher.retry(event.event_id)
    assert await dispatcher.redrive_due() == []
    assert resolver.calls == []
    assert orders.get("order-1").status == OrderStatus.PENDING


def test_malformed_body_is_rejected_after_being_stored(dispatcher) -> None:
    body = b"{not json"

    with pytest.raises(WebhookPayloadError):
        dispatcher.receive(body, _simple(body), {})

    [event] = dispatcher.list_events()
    assert event.status == WebhookStatus.FAILED
    assert event.last_error == "malformed payload"
    assert event.retry_count == 0
    assert event.next_attempt_at is None


def test_missing_resource_id_is_rejected(dispatcher) -> None:
    body = json.dumps({"type": "payment"}).encode()

    with pytest.raises(WebhookPayloadError):
        dispatcher.receive(body, _simple(body), {})


@pytest.mark.asyncio
async def test_signed_but_unusable_payload_is_not_redriven(dispatcher, resolver) -> None:
    body = json.dumps({"type": "payment"}).encode()
    with pytest.raises(WebhookPayloadError):
        dispatcher.receive(body, _simple(body), {})
    [event] = dispatcher.list_events()
    assert event.signature_valid is True

    with pytest.raises(WebhookNotRetryableError):
        await dispatcher.retry(event.event_id)
    assert await dispatcher.process(event.event_id) == WebhookStatus.FAILED
    assert await dispatcher.redrive_due() == []
    assert resolver.calls == []
    assert dispatcher.get(event.event_id).status == WebhookStatus.FAILED


@pytest.mark.asyncio
async def test_resource_not_found_backs_off_then_succeeds(
    dispatcher, orders, resolver, clock
) -> None:
    orders.create(order_id="order-1", external_reference="ORD-1")
    resolver.failures.append(ResourceNotFoundError("not yet"))

    status = await _deliver(dispatcher)

    assert status == WebhookStatus.FAILED
    [event] = dispatcher.list_events()
    assert event.retry_count == 1
    assert event.next_attempt_at == clock() + timedelta(seconds=30)
    assert "ResourceNotFoundError" in event.last_error

    assert await dispatcher.redrive_due() == []

    clock.advance(seconds=31)
    results = await dispatcher.redrive_due()

    assert results == [(event.event_id, WebhookStatus.PROCESSED)]
    assert orders.get("order-1").status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_repeated_failures_dead_letter_at_ceiling(
    dispatcher, orders, resolver, clock, caplog
) -> None:
    orders.create(order_id="order-1", external_reference="ORD-1")
    resolver.failures.extend(ExternalApiError("boom", status_code=502) for _ in range(3))

    assert await _deliver(dispatcher) == WebhookStatus.FAILED
    clock.advance(seconds=30)
    [(event_id, status)] = await dispatcher.redrive_due()
    assert status == WebhookStatus.FAILED
    assert dispatcher.get(event_id).next_attempt_at == clock() + timedelta(seconds=60)

    clock.advance(seconds=60)
    with caplog.at_level(logging.ERROR):
        assert await dispatcher.redrive_due() == [(event_id, WebhookStatus.DEAD_LETTER)]

    event = dispatcher.get(event_id)
    assert event.retry_count == 3
    assert event.next_attempt_at is None
    assert any("dead-lettered" in record.getMessage() for record in caplog.records)

    clock.advance(hours=2)
    assert await dispatcher.redrive_due() == []
    assert orders.get("order-1").status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_admin_retry_redrives_dead_letter(dispatcher, orders, resolver) -> None:
    orders.create(order_id="order-1", external_reference="ORD-1")
    resolver.failures.extend(ResourceNotFoundError("missing") for _ in range(3))
    await _deliver(dispatcher)
    [event] = dispatcher.list_events()
    for _ in range(2):
        await dispatcher.retry(event.event_id)
    assert dispatcher.get(event.event_id).status == WebhookStatus.DEAD_LETTER

    assert await dispatcher.retry(event.event_id) == WebhookStatus.PROCESSED
    assert orders.get("order-1").status == OrderStatus.PAID

    with pytest.raises(WebhookNotRetryableError):
        await dispatcher.retry(event.event_id)


@pytest.mark.asyncio
async def test_failed_redrive_of_dead_letter_returns_to_dead_letter(
    dispatcher, orders, resolver
) -> None:
    orders.create(order_id="order-1", external_reference="ORD-1")
    resolver.failures.extend(ResourceNotFoundError("missing") for _ in range(4))
    await _deliver(dispatcher)
    [event] = dispatcher.list_events()
    await dispatcher.retry(event.event_id)
    await dispatcher.retry(event.event_id)

    assert await dispatcher.retry(event.event_id) == WebhookStatus.DEAD_LETTER
    assert dispatcher.get(event.event_id).retry_count == 4


@pytest.mark.asyncio
async def test_retry_of_unknown_event(dispatcher) -> None:
    with pytest.raises(WebhookEventNotFoundError):
        await dispatcher.retry("does-not-exist")


@pytest.mark.asyncio
async def test_unknown_topic_is_processed_and_ignored(dispatcher, resolver) -> None:
    status = await _deliver(dispatcher, {"type": "merchant_order", "data": {"id": "555"}})

    assert status == WebhookStatus.PROCESSED
    [event] = dispatcher.list_events()
    assert event.outcome.startswith("ignored")
    assert resolver.calls == []


@pytest.mark.asyncio
async def test_unmapped_status_leaves_order_and_warns_once(
    dispatcher, orders, resolver, caplog
) -> None:
    orders.create(order_id="order-1", external_reference="ORD-1")
    resolver.statuses["987654321"] = "mystery_state"

    with caplog.at_level(logging.WARNING):
        await _deliver(dispatcher)
        await _deliver(dispatcher, request_id="req-2")

    assert orders.get("order-1").status == OrderStatus.PENDING
    warnings = [r for r in caplog.records if "Unmapped external status" in r.getMessage()]
    assert len(warnings) == 1


@pytest.mark.asyncio
async def test_missing_order_is_retried(dispatcher, resolver) -> None:
    status = await _deliver(dispatcher)

    assert status == WebhookStatus.FAILED
    [event] = dispatcher.list_events()
    assert "ORD-1" in event.last_error


def test_backoff_is_capped(dispatcher) -> None:
    assert dispatcher.backoff(1) == timedelta(seconds=30)
    assert dispatcher.backoff(3) == timedelta(seconds=120)
    assert dispatcher.backoff(20) == timedelta(seconds=3600)


@pytest.mark.parametrize(
    ("topic", "family"),
    [
        ("payment", "payment"),
        ("payment.updated", "payment"),
        ("orders_v2", "orders"),
        ("merchant_order", None),
        (None, None),
    ],
)
def test_topic_family(topic, family) -> None:
    assert topic_family(topic) == family


def test_parse_notification_fallbacks() -> None:
    assert parse_notification({"type": "payment", "data": {"id": 12}}, {}) == ("payment", "12")
    assert parse_notification(
        {"topic": "orders_v2", "resource": "/orders/2000003508419013"}, {}
    ) == ("orders_v2", "2000003508419013")
    assert parse_notification({}, {"topic": "payment", "data.id": "77"}) == ("payment", "77")
