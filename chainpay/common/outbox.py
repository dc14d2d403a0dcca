"""Transactional webhook queue: enqueue, lease-based claim, and completion.

Rows are written in the same transaction as the lifecycle change that caused
them, then claimed by dispatcher workers. A claim is a lease: it names its
owner and expires, so rows left in `Processing` by a dead worker are picked up
again once the lease runs out.
"""

from datetime import datetime, timedelta

from sqlalchemy import case, func, or_, select, update

from chainpay.common.config import settings
from chainpay.common.db import as_utc, utcnow
from chainpay.common.events import WebhookEvent
from chainpay.common.logging import logger
from chainpay.common.metrics import webhook_oldest_pending_age_seconds, webhook_pending_total
from chainpay.common.models import Invoice, Webhook
from chainpay.common.state_machine import WebhookStatus, validate_transition


def enqueue_webhook(db, invoice: Invoice, event: WebhookEvent) -> Webhook | None:
    """Queue one event for the invoice's endpoint; no-op when it has none."""

    if not invoice.webhook_url:
        logger.info(
            "webhook skipped invoice_id=%s event_type=%s reason=no_url",
            invoice.id,
            event.event_type.value,
        )
        return None
    webhook = Webhook(
        id=event.event_id,
        invoice_id=invoice.id,
        event_type=event.event_type.value,
        url=invoice.webhook_url,
        payload=event.model_dump(mode="json"),
        status=WebhookStatus.PENDING,
        attempts=0,
        max_retries=settings.webhook_max_retries,
        next_retry=utcnow(),
    )
    db.add(webhook)
    return webhook


def claim_webhook_batch(
    db,
    owner: str,
    limit: int = 50,
    lease_seconds: int = 60,
    now: datetime | None = None,
) -> list[dict]:
    """Atomically claim due Pending rows and Processing rows with expired leases.

    A reclaimed row counts its abandoned attempt, so an endpoint that hangs
    past the lease still runs out of retries. Rows whose abandoned attempt was
    the last one are marked Failed instead of being claimed.
    """

    table = Webhook.__table__
    now = now or utcnow()
    candidates = db.execute(
        select(table.c.id, table.c.status, table.c.attempts, table.c.max_retries)
        .where(
            or_(
                (table.c.status == WebhookStatus.PENDING) & (table.c.next_retry <= now),
                (table.c.status == WebhookStatus.PROCESSING)
                & (table.c.lease_expires_at.is_not(None))
                & (table.c.lease_expires_at <= now),
            )
        )
        .order_by(table.c.next_retry)
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).all()
    if not candidates:
        return []

    reclaimed = {row.id for row in candidates if row.status == WebhookStatus.PROCESSING}
    exhausted = [
        row.id for row in candidates if row.id in reclaimed and row.attempts + 1 >= row.max_retries
    ]
    if exhausted:
        validate_transition(WebhookStatus.PROCESSING, WebhookStatus.FAILED)
        db.execute(
            update(table)
            .where(table.c.id.in_(exhausted))
            .values(
                status=WebhookStatus.FAILED,
                attempts=table.c.attempts + 1,
                lease_owner=None,
                lease_expires_at=None,
                last_error="lease expired before delivery completed",
            )
        )
        logger.error("webhooks failed after abandoned final attempt ids=%s", exhausted)

    claimable = [row for row in candidates if row.id not in exhausted]
    if not claimable:
        return []
    for row in claimable:
        validate_transition(row.status, WebhookStatus.PROCESSING)
    rows = db.execute(
        update(table)
        .where(table.c.id.in_([row.id for row in claimable]))
        .values(
            status=WebhookStatus.PROCESSING,
            attempts=table.c.attempts + case((table.c.status == WebhookStatus.PROCESSING, 1), else_=0),
            lease_owner=owner,
            lease_expires_at=now + timedelta(seconds=lease_seconds),
        )
        .returning(
            table.c.id,
            table.c.invoice_id,
            table.c.event_type,
            table.c.url,
            table.c.payload,
            table.c.attempts,
            table.c.max_retries,
        )
    ).all()
    secrets = {}
    invoice_ids = {row.invoice_id for row in rows}
    if invoice_ids:
        secrets = dict(
            db.execute(select(Invoice.id, Invoice.webhook_secret).where(Invoice.id.in_(invoice_ids))).all()
        )
    return [
        {
            "id": row.id,
            "invoice_id": row.invoice_id,
            "event_type": row.event_type,
            "url": row.url,
            "payload": row.payload,
            "attempts": row.attempts,
            "max_retries": row.max_retries,
            "secret": secrets.get(row.invoice_id),
            "reclaimed": row.id in reclaimed,
        }
        for row in rows
    ]


def _complete(db, webhook_id: str, owner: str, status: WebhookStatus, **values) -> bool:
    """Release a claimed row into `status`. False when the lease was lost."""

    validate_transition(WebhookStatus.PROCESSING, status)
    table = Webhook.__table__
    result = db.execute(
        update(table)
        .where(
            (table.c.id == webhook_id)
            & (table.c.status == WebhookStatus.PROCESSING)
            & (table.c.lease_owner == owner)
        )
        .values(status=status, lease_owner=None, lease_expires_at=None, **values)
    )
    return result.rowcount == 1


def mark_webhook_sent(db, webhook_id: str, owner: str, now: datetime | None = None) -> bool:
    """Mark one claimed row as delivered."""

    table = Webhook.__table__
    return _complete(
        db,
        webhook_id,
        owner,
        WebhookStatus.SENT,
        attempts=table.c.attempts + 1,
        sent_at=now or utcnow(),
        last_error=None,
    )


def schedule_webhook_retry(
    db,
    webhook_id: str,
    owner: str,
    attempts: int,
    delay_seconds: float,
    error: str,
    now: datetime | None = None,
) -> bool:
    """Return a claimed row to `Pending`, eligible again after `delay_seconds`."""

    now = now or utcnow()
    return _complete(
        db,
        webhook_id,
        owner,
        WebhookStatus.PENDING,
        attempts=attempts,
        next_retry=now + timedelta(seconds=delay_seconds),
        last_error=error,
    )


def mark_webhook_failed(db, webhook_id: str, owner: str, attempts: int, error: str) -> bool:
    """Terminal failure after exhausting retries."""

    return _complete(db, webhook_id, owner, WebhookStatus.FAILED, attempts=attempts, last_error=error)


def requeue_failed_webhooks(
    db,
    invoice_id: str | None = None,
    webhook_id: str | None = None,
    extra_retries: int = 1,
) -> int:
    """Give Failed rows `extra_retries` more attempts (operator action)."""

    table = Webhook.__table__
    stmt = update(table).where(table.c.status == WebhookStatus.FAILED)
    if invoice_id is not None:
        stmt = stmt.where(table.c.invoice_id == invoice_id)
    if webhook_id is not None:
        stmt = stmt.where(table.c.id == webhook_id)
    result = db.execute(
        stmt.values(
            status=WebhookStatus.PENDING,
            max_retries=table.c.attempts + extra_retries,
            next_retry=utcnow(),
        )
    )
    return result.rowcount


def update_webhook_backlog_metrics(db, service_name: str) -> None:
    """Update worker-level gauges for pending webhook depth and oldest age."""

    table = Webhook.__table__
    now = utcnow()
    pending_statuses = (WebhookStatus.PENDING, WebhookStatus.PROCESSING)
    pending_count = (
        db.execute(select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))).scalar_one()
    )
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        age_seconds = max(0.0, (now - as_utc(oldest_pending)).total_seconds())
    webhook_pending_total.labels(service=service_name).set(float(pending_count))
    webhook_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)
