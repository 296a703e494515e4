"""Tests for the webhook re-drive job."""

from __future__ import annotations

import hashlib
import hmac
import json

import pytest

from marketplace_bridge.clients.sqlite_store import SQLiteStore
from marketplace_bridge.core.config import WebhookSettings
from marketplace_bridge.core.errors import ExternalApiError
from marketplace_bridge.models.webhook import ResolvedResource, WebhookStatus
from marketplace_bridge.services.orders import OrderRepository
from marketplace_bridge.services.signature import SignatureVerifier
from marketplace_bridge.services.webhook_dispatcher import WebhookDispatcher
from scripts import redrive

SECRET = "redrive-secret"


class FlakyResolver:
    def __init__(self, failures: int) -> None:
        self.failures = failures

    async def __call__(self, resource_id: str) -> ResolvedResource:
        if self.failures:
            self.failures -= 1
            raise ExternalApiError("payments API returned 503", status_code=503)
        return ResolvedResource(
            resource_id=resource_id, external_reference="ORD-7", external_status="approved"
        )


def _dispatcher(tmp_path, clock, resolver) -> WebhookDispatcher:
    store = SQLiteStore(str(tmp_path / "redrive.db"))
    orders = OrderRepository(store)
    orders.create(order_id="order-7", external_reference="ORD-7")
    return WebhookDispatcher(
        store,
        orders,
        SignatureVerifier(),
        WebhookSettings(shared_secret=SECRET, max_retries=2, retry_base_seconds=10),
        resolvers={"payment": resolver},
        clock=clock,
    )


async def _deliver(dispatcher: WebhookDispatcher) -> str:
    body = json.dumps({"type": "payment", "data": {"id": "7"}}).encode()
    digest = hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()
    receipt = dispatcher.receive(body, {"x-signature": f"sha256={digest}"}, {})
    await dispatcher.process(receipt.event.event_id)
    return receipt.event.event_id


def _args(*argv: str):
    return redrive._build_parser().parse_args(list(argv))


@pytest.mark.asyncio
async def test_due_events_are_redriven(tmp_path, clock, capsys) -> None:
    dispatcher = _dispatcher(tmp_path, clock, FlakyResolver(failures=1))
    event_id = await _deliver(dispatcher)
    clock.advance(seconds=10)

    exit_code = await redrive.run(dispatcher, _args())

    assert exit_code == redrive.EXIT_OK
    assert f"{event_id}: processed" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_dead_lettered_events_change_exit_code(tmp_path, clock) -> None:
    dispatcher = _dispatcher(tmp_path, clock, FlakyResolver(failures=5))
    event_id = await _deliver(dispatcher)
    clock.advance(seconds=10)

    exit_code = await redrive.run(dispatcher, _args())

    assert exit_code == redrive.EXIT_DEAD_LETTERED
    assert dispatcher.get(event_id).status == WebhookStatus.DEAD_LETTER


@pytest.mark.asyncio
async def test_single_event_redrive_and_listing(tmp_path, clock, capsys) -> None:
    resolver = FlakyResolver(failures=2)
    dispatcher = _dispatcher(tmp_path, clock, resolver)
    event_id = await _deliver(dispatcher)
    await dispatcher.retry(event_id)
    assert dispatcher.get(event_id).status == WebhookStatus.DEAD_LETTER

    assert await redrive.run(dispatcher, _args("--list", "dead_letter")) == redrive.EXIT_OK
    assert event_id in capsys.readouterr().out

    assert await redrive.run(dispatcher, _args("--event-id", event_id)) == redrive.EXIT_OK
    assert dispatcher.get(event_id).status == WebhookStatus.PROCESSED

    exit_code = await redrive.run(dispatcher, _args("--event-id", event_id))
    assert exit_code == redrive.EXIT_NOT_RETRYABLE
    assert await redrive.run(dispatcher, _args("--event-id", "missing")) == (
        redrive.EXIT_NOT_RETRYABLE
    )
