"""Payment ledger: idempotent record of observed transfers.

Rows are keyed by (tx_hash, log_index, network). Re-observing a transfer,
whether from a restart, a re-scan after a reorg, or a second watcher, never
creates a second row.
"""

from datetime import datetime

from sqlalchemy import delete, func, select, update

from chainpay.chains.base import Transfer
from chainpay.common.db import dialect_insert, utcnow
from chainpay.common.models import Invoice, Payment
from chainpay.common.state_machine import PaymentStatus, validate_transition


class PaymentLedger:
    """Store operations on `payments`; every call runs inside the caller's session."""

    def record_transfer(self, db, network: str, invoice: Invoice, transfer: Transfer, token: str, block_number: int) -> bool:
        """Insert a Confirming payment. Returns False when the key already exists."""

        stmt = (
            dialect_insert(db, Payment)
            .values(
                invoice_id=invoice.id,
                from_address=transfer.from_address,
                to_address=transfer.to_address,
                network=network,
                token=token,
                tx_hash=transfer.tx_hash.lower(),
                log_index=transfer.log_index,
                amount_raw=transfer.amount_raw,
                block_number=block_number,
                status=PaymentStatus.CONFIRMING,
            )
            .on_conflict_do_nothing(index_elements=["tx_hash", "log_index", "network"])
            .returning(Payment.id)
        )
        return db.execute(stmt).scalar_one_or_none() is not None

    def confirming_payments(self, db, network: str) -> list[Payment]:
        return list(
            db.execute(
                select(Payment)
                .where(Payment.network == network, Payment.status == PaymentStatus.CONFIRMING)
                .order_by(Payment.block_number, Payment.tx_hash, Payment.log_index)
            ).scalars()
        )

    def due_for_confirmation(self, db, network: str, tip: int, block_lag: int) -> list[Payment]:
        """Confirming payments buried at least `block_lag` blocks below `tip`."""

        return list(
            db.execute(
                select(Payment)
                .where(
                    Payment.network == network,
                    Payment.status == PaymentStatus.CONFIRMING,
                    Payment.block_number <= tip - block_lag,
                )
                .order_by(Payment.block_number)
            ).scalars()
        )

    def confirm(self, db, payment: Payment, now: datetime | None = None) -> bool:
        """Confirming -> Confirmed; False if another writer got there first."""

        validate_transition(payment.status, PaymentStatus.CONFIRMED)
        result = db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == payment.status)
            .values(status=PaymentStatus.CONFIRMED, confirmed_at=now or utcnow())
        )
        return result.rowcount == 1

    def retract(self, db, payment_id: str) -> bool:
        """Drop a payment whose transaction left the canonical chain.

        Confirmed rows are never deleted.
        """

        result = db.execute(
            delete(Payment).where(Payment.id == payment_id, Payment.status == PaymentStatus.CONFIRMING)
        )
        return result.rowcount == 1

    def relocate(self, db, payment_id: str, block_number: int) -> bool:
        """Move a Confirming payment to the height its transaction was re-mined at."""

        result = db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.CONFIRMING)
            .values(block_number=block_number)
        )
        return result.rowcount == 1

    def confirmed_total(self, db, invoice: Invoice) -> int:
        amounts = db.execute(
            select(Payment.amount_raw).where(
                Payment.invoice_id == invoice.id,
                Payment.network == invoice.network,
                func.lower(Payment.to_address) == invoice.address.lower(),
                Payment.status == PaymentStatus.CONFIRMED,
            )
        ).scalars()
        return sum(amounts, 0)
