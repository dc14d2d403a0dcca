"""Invoice janitor: expires Pending invoices whose deadline has passed."""

import asyncio
from datetime import datetime

from sqlalchemy import select, update

from chainpay.common.config import settings
from chainpay.common.db import utcnow
from chainpay.common.events import WebhookEventType, invoice_event
from chainpay.common.logging import logger
from chainpay.common.metrics import invoices_expired_total
from chainpay.common.models import Invoice
from chainpay.common.outbox import enqueue_webhook
from chainpay.common.state_machine import InvoiceStatus, validate_transition


class InvoiceJanitor:
    """Periodic sweep moving overdue Pending invoices to Expired.

    Rows are claimed with `FOR UPDATE SKIP LOCKED`, so an invoice currently
    being settled is left for the next sweep, and the status update itself is
    conditional on `Pending`. Whichever of settlement or expiry commits first
    wins; the other becomes a no-op.
    """

    def __init__(
        self,
        session_factory,
        batch_size: int | None = None,
        notify_expired: bool | None = None,
        interval_seconds: float | None = None,
        service_name: str = "janitor",
    ) -> None:
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.janitor_batch_size
        self.notify_expired = settings.notify_expired if notify_expired is None else notify_expired
        self.interval_seconds = settings.janitor_interval_seconds if interval_seconds is None else interval_seconds
        self.service_name = service_name

    def expire_due(self, now: datetime | None = None) -> list[str]:
        """Expire one batch; returns the ids that actually transitioned."""

        now = now or utcnow()
        with self.session_factory() as db:
            rows = db.execute(
                select(Invoice.id, Invoice.status)
                .where(Invoice.status == InvoiceStatus.PENDING, Invoice.expires_at <= now)
                .order_by(Invoice.expires_at)
                .limit(self.batch_size)
                .with_for_update(skip_locked=True)
            ).all()
            if not rows:
                return []
            for row in rows:
                validate_transition(row.status, InvoiceStatus.EXPIRED)
            candidates = [row.id for row in rows]
            expired_ids = list(
                db.execute(
                    update(Invoice)
                    .where(Invoice.id.in_(candidates), Invoice.status == InvoiceStatus.PENDING)
                    .values(status=InvoiceStatus.EXPIRED, updated_at=now)
                    .returning(Invoice.id)
                    .execution_options(synchronize_session=False)
                ).scalars()
            )
            if self.notify_expired and expired_ids:
                invoices = db.execute(
                    select(Invoice)
                    .where(Invoice.id.in_(expired_ids))
                    .execution_options(populate_existing=True)
                ).scalars()
                for invoice in invoices:
                    enqueue_webhook(db, invoice, invoice_event(WebhookEventType.INVOICE_EXPIRED, invoice))
            db.commit()

        if expired_ids:
            invoices_expired_total.labels(service=self.service_name).inc(len(expired_ids))
            logger.info("expired %s invoices ids=%s", len(expired_ids), expired_ids)
        return expired_ids

    async def run_forever(self) -> None:
        """Sweep on an interval; a full batch is followed immediately by another."""

        while True:
            try:
                expired = self.expire_due()
                if len(expired) >= self.batch_size:
                    continue
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("janitor sweep failed: %s", exc)
            await asyncio.sleep(self.interval_seconds)
