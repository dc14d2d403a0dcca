"""Closed status enums and the transitions the workers are allowed to apply."""

from enum import Enum


class InvoiceStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    EXPIRED = "Expired"


class PaymentStatus(str, Enum):
    CONFIRMING = "Confirming"
    CONFIRMED = "Confirmed"


class WebhookStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SENT = "Sent"
    FAILED = "Failed"


class InvalidTransition(ValueError):
    """Raised when a status change is not allowed by the state machine."""


ALLOWED_TRANSITIONS: dict[Enum, frozenset[Enum]] = {
    InvoiceStatus.PENDING: frozenset({InvoiceStatus.PAID, InvoiceStatus.EXPIRED}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.EXPIRED: frozenset(),
    PaymentStatus.CONFIRMING: frozenset({PaymentStatus.CONFIRMED}),
    PaymentStatus.CONFIRMED: frozenset(),
    WebhookStatus.PENDING: frozenset({WebhookStatus.PROCESSING}),
    # Processing -> Processing is a lease reclaim by another dispatcher.
    WebhookStatus.PROCESSING: frozenset(
        {WebhookStatus.SENT, WebhookStatus.PENDING, WebhookStatus.FAILED, WebhookStatus.PROCESSING}
    ),
    WebhookStatus.SENT: frozenset(),
    WebhookStatus.FAILED: frozenset(),
}


def can_transition(current: Enum, new: Enum) -> bool:
    if type(current) is not type(new):
        return False
    return new in ALLOWED_TRANSITIONS[current]


def validate_transition(current: Enum, new: Enum) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if not can_transition(current, new):
        raise InvalidTransition(f"Invalid transition: {current.value} -> {new.value}")


def is_terminal(status: Enum) -> bool:
    return not ALLOWED_TRANSITIONS[status]
