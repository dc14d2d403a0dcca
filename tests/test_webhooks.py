"""Webhook dispatch: signing, retries with backoff, and lease ownership."""

import json
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from chainpay.common.db import as_utc, utcnow
from chainpay.common.events import WebhookEventType, invoice_event
from chainpay.common.models import Invoice, Webhook
from chainpay.common.outbox import (
    claim_webhook_batch,
    enqueue_webhook,
    mark_webhook_sent,
    requeue_failed_webhooks,
)
from chainpay.common.signing import canonical_body, verify_signature
from chainpay.common.state_machine import WebhookStatus
from chainpay.services.webhooks.service import WebhookDispatcher

from conftest import WEBHOOK_SECRET, WEBHOOK_URL


def queue_event(session_factory, invoice_id, event_type=WebhookEventType.INVOICE_PAID):
    with session_factory() as db:
        invoice = db.get(Invoice, invoice_id)
        webhook = enqueue_webhook(db, invoice, invoice_event(event_type, invoice))
        db.commit()
        return webhook.id


def stored(session_factory, webhook_id):
    with session_factory() as db:
        return db.get(Webhook, webhook_id)


def dispatcher_with(session_factory, handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookDispatcher(session_factory, client=client, **kwargs)


@pytest.mark.asyncio
async def test_delivery_is_signed_and_marked_sent(session_factory, make_invoice):
    invoice = make_invoice()
    webhook_id = queue_event(session_factory, invoice.id)
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    dispatcher = dispatcher_with(session_factory, handler)
    assert await dispatcher.dispatch_once() == 1

    request = seen[0]
    body = request.content.decode()
    assert str(request.url) == WEBHOOK_URL
    assert request.headers["X-Webhook-Id"] == webhook_id
    assert request.headers["X-Webhook-Event"] == "invoice.paid"
    assert verify_signature(
        WEBHOOK_SECRET,
        request.headers["X-Webhook-Timestamp"],
        body,
        request.headers["X-Webhook-Signature"],
    )
    payload = json.loads(body)
    assert payload["event_id"] == webhook_id
    assert payload["invoice_id"] == invoice.id
    assert payload["amount_raw"] == "1000"
    assert body == canonical_body(payload)

    row = stored(session_factory, webhook_id)
    assert row.status == WebhookStatus.SENT
    assert row.attempts == 1
    assert row.sent_at is not None
    assert row.lease_owner is None
    assert await dispatcher.dispatch_once() == 0


@pytest.mark.asyncio
async def test_unsigned_when_invoice_has_no_secret(session_factory, make_invoice):
    invoice = make_invoice(webhook_secret=None)
    queue_event(session_factory, invoice.id)
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(204)

    await dispatcher_with(session_factory, handler).dispatch_once()
    assert "X-Webhook-Signature" not in seen[0].headers


@pytest.mark.asyncio
async def test_failing_endpoint_ends_failed_after_max_retries(session_factory, make_invoice):
    """Each failure reschedules further out; the fifth attempt is terminal."""

    invoice = make_invoice()
    webhook_id = queue_event(session_factory, invoice.id)
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    dispatcher = dispatcher_with(session_factory, handler)
    waits = []
    for _ in range(5):
        before = utcnow()
        assert await dispatcher.dispatch_once(now=before + timedelta(days=1)) == 1
        row = stored(session_factory, webhook_id)
        if row.status == WebhookStatus.PENDING:
            waits.append((as_utc(row.next_retry) - before).total_seconds())

    row = stored(session_factory, webhook_id)
    assert len(calls) == 5
    assert row.status == WebhookStatus.FAILED
    assert row.attempts == 5
    assert row.last_error == "HTTP 500"
    assert len(waits) == 4
    assert waits == sorted(waits)
    assert await dispatcher.dispatch_once(now=utcnow() + timedelta(days=2)) == 0


@pytest.mark.asyncio
async def test_retry_is_not_claimed_before_it_is_due(session_factory, make_invoice):
    invoice = make_invoice()
    queue_event(session_factory, invoice.id)
    dispatcher = dispatcher_with(session_factory, lambda request: httpx.Response(503))

    assert await dispatcher.dispatch_once() == 1
    assert await dispatcher.dispatch_once() == 0


@pytest.mark.asyncio
async def test_network_error_is_retried(session_factory, make_invoice):
    invoice = make_invoice()
    webhook_id = queue_event(session_factory, invoice.id)

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    await dispatcher_with(session_factory, handler).dispatch_once()

    row = stored(session_factory, webhook_id)
    assert row.status == WebhookStatus.PENDING
    assert row.attempts == 1
    assert row.last_error.startswith("ConnectError")


@pytest.mark.asyncio
async def test_expired_lease_is_reclaimed_by_another_dispatcher(session_factory, make_invoice):
    invoice = make_invoice()
    webhook_id = queue_event(session_factory, invoice.id)
    claimed_at = utcnow()
    with session_factory() as db:
        jobs = claim_webhook_batch(db, "crashed-worker", limit=10, lease_seconds=60, now=claimed_at)
        db.commit()
    assert [job["id"] for job in jobs] == [webhook_id]

    dispatcher = dispatcher_with(session_factory, lambda request: httpx.Response(200), owner="survivor")
    assert await dispatcher.dispatch_once(now=claimed_at + timedelta(seconds=30)) == 0
    assert await dispatcher.dispatch_once(now=claimed_at + timedelta(seconds=61)) == 1
    row = stored(session_factory, webhook_id)
    assert row.status == WebhookStatus.SENT
    # The abandoned attempt counts alongside the successful one.
    assert row.attempts == 2

    # The original holder wakes up late: its completion is ignored.
    with session_factory() as db:
        assert mark_webhook_sent(db, webhook_id, "crashed-worker") is False


def test_abandoned_attempts_exhaust_retries(session_factory, make_invoice):
    """A worker that keeps dying mid-delivery still ends in Failed after max_retries attempts."""

    invoice = make_invoice()
    webhook_id = queue_event(session_factory, invoice.id)
    claimed_at = utcnow()
    claims = 0
    for crash in range(10):
        now = claimed_at + timedelta(seconds=61 * crash)
        with session_factory() as db:
            jobs = claim_webhook_batch(db, f"worker-{crash}", lease_seconds=60, now=now)
            db.commit()
        if not jobs:
            break
        claims += 1

    row = stored(session_factory, webhook_id)
    assert claims == 5
    assert row.status == WebhookStatus.FAILED
    assert row.attempts == 5
    assert row.lease_owner is None
    assert row.last_error.startswith("lease expired")


@pytest.mark.asyncio
async def test_failed_webhook_can_be_requeued(session_factory, make_invoice):
    invoice = make_invoice()
    webhook_id = queue_event(session_factory, invoice.id)
    dispatcher = dispatcher_with(session_factory, lambda request: httpx.Response(500))
    for _ in range(5):
        await dispatcher.dispatch_once(now=utcnow() + timedelta(days=1))
    assert stored(session_factory, webhook_id).status == WebhookStatus.FAILED

    with session_factory() as db:
        assert requeue_failed_webhooks(db, invoice_id=invoice.id) == 1
        db.commit()

    recovered = dispatcher_with(session_factory, lambda request: httpx.Response(200))
    assert await recovered.dispatch_once() == 1
    row = stored(session_factory, webhook_id)
    assert row.status == WebhookStatus.SENT
    assert row.attempts == 6


def test_no_webhook_without_url(session_factory, make_invoice):
    invoice = make_invoice(webhook_url=None)
    with session_factory() as db:
        assert enqueue_webhook(db, invoice, invoice_event(WebhookEventType.INVOICE_EXPIRED, invoice)) is None
        db.commit()
        assert db.execute(select(Webhook)).scalars().all() == []
