"""Webhook event envelope sent to merchant endpoints.

Every payload carries the invoice identity, event type, and the amounts and
chain references the receiver needs to de-duplicate at-least-once deliveries.
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


class WebhookEventType(str, Enum):
    INVOICE_PAID = "invoice.paid"
    INVOICE_EXPIRED = "invoice.expired"
    PAYMENT_CONFIRMED = "payment.confirmed"


class WebhookEvent(BaseModel):
    """Canonical JSON document stored in `webhooks.payload`."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: WebhookEventType
    invoice_id: str
    network: str
    token: str
    address: str
    # Decimal strings: uint256 amounts overflow JSON numbers.
    amount_raw: str
    paid_raw: str
    status: str
    tx_hash: str | None = None
    log_index: int | None = None
    block_number: int | None = None
    confirmations: int | None = None
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


def invoice_event(event_type: WebhookEventType, invoice, payment=None, confirmations: int | None = None) -> WebhookEvent:
    """Snapshot an invoice (and optionally the payment that triggered it)."""

    event = WebhookEvent(
        event_type=event_type,
        invoice_id=invoice.id,
        network=invoice.network,
        token=invoice.token,
        address=invoice.address,
        amount_raw=str(invoice.amount_raw),
        paid_raw=str(invoice.paid_raw),
        status=invoice.status.value,
        confirmations=confirmations,
    )
    if payment is not None:
        event.tx_hash = payment.tx_hash
        event.log_index = payment.log_index
        event.block_number = payment.block_number
    return event
