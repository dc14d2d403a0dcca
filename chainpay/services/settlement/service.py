"""Invoice settlement engine.

Recomputes an invoice's paid amount from its Confirmed payments and moves it
to Paid exactly once. The invoice row lock taken in `settle` is the single
writer point per invoice; the janitor's expiry update waits on the same lock
and is guarded by `status = Pending`, so an invoice lands on exactly one
terminal state.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update

from chainpay.common.db import as_utc, utcnow
from chainpay.common.events import WebhookEventType, invoice_event
from chainpay.common.logging import log_context, logger
from chainpay.common.metrics import invoice_time_to_paid_seconds, invoices_paid_total
from chainpay.common.models import Invoice, Payment
from chainpay.common.outbox import enqueue_webhook
from chainpay.common.state_machine import InvoiceStatus, is_terminal, validate_transition
from chainpay.services.ledger.service import PaymentLedger


@dataclass(frozen=True)
class SettlementOutcome:
    invoice_id: str
    status: InvoiceStatus
    paid_raw: int
    became_paid: bool = False


class SettlementEngine:
    """Aggregates confirmed payments per invoice and advances invoice status."""

    def __init__(self, ledger: PaymentLedger | None = None) -> None:
        self.ledger = ledger or PaymentLedger()

    def settle(
        self,
        db,
        invoice_id: str,
        payment: Payment | None = None,
        confirmations: int | None = None,
    ) -> SettlementOutcome | None:
        """Reconcile one invoice inside the caller's transaction."""

        with log_context(invoice_id=invoice_id):
            invoice = db.execute(
                select(Invoice)
                .where(Invoice.id == invoice_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if invoice is None:
                logger.warning("settlement skipped: invoice %s not found", invoice_id)
                return None

            total = self.ledger.confirmed_total(db, invoice)
            if total < invoice.paid_raw:
                # Confirmed payments are never removed, so this only happens on manual edits.
                logger.error(
                    "confirmed total below recorded paid_raw invoice_id=%s total=%s paid_raw=%s",
                    invoice.id,
                    total,
                    invoice.paid_raw,
                )
                total = invoice.paid_raw
            if total != invoice.paid_raw:
                db.execute(
                    update(Invoice)
                    .where(Invoice.id == invoice.id, Invoice.paid_raw <= total)
                    .values(paid_raw=total, updated_at=utcnow())
                )
                invoice.paid_raw = total

            became_paid = False
            if invoice.status == InvoiceStatus.PENDING and total >= invoice.amount_raw:
                became_paid = self._mark_paid(db, invoice)
            elif total >= invoice.amount_raw and is_terminal(invoice.status):
                logger.info(
                    "invoice %s already %s; paid_raw=%s recorded without status change",
                    invoice.id,
                    invoice.status.value,
                    total,
                )

            if became_paid:
                enqueue_webhook(db, invoice, invoice_event(WebhookEventType.INVOICE_PAID, invoice, payment))
            elif payment is not None:
                enqueue_webhook(
                    db,
                    invoice,
                    invoice_event(WebhookEventType.PAYMENT_CONFIRMED, invoice, payment, confirmations),
                )
            return SettlementOutcome(invoice.id, invoice.status, total, became_paid)

    def _mark_paid(self, db, invoice: Invoice) -> bool:
        validate_transition(invoice.status, InvoiceStatus.PAID)
        result = db.execute(
            update(Invoice)
            .where(Invoice.id == invoice.id, Invoice.status == invoice.status)
            .values(status=InvoiceStatus.PAID, updated_at=utcnow())
        )
        if result.rowcount != 1:
            logger.info("invoice %s left Pending concurrently; not marking Paid", invoice.id)
            db.refresh(invoice)
            return False
        invoice.status = InvoiceStatus.PAID
        invoices_paid_total.labels(chain=invoice.network).inc()
        created_at = as_utc(invoice.created_at)
        if created_at is not None:
            elapsed = max(0.0, (datetime.now(timezone.utc) - created_at).total_seconds())
            invoice_time_to_paid_seconds.labels(chain=invoice.network).observe(elapsed)
        logger.info(
            "invoice fully paid invoice_id=%s paid_raw=%s amount_raw=%s",
            invoice.id,
            invoice.paid_raw,
            invoice.amount_raw,
        )
        return True
