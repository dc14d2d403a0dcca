"""Gateway database models.

This DB is the source of truth for chain watermarks, invoices, observed
payments, and the webhook delivery queue shared by every worker.
"""

import enum
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from chainpay.common.db import Base, utcnow
from chainpay.common.state_machine import InvoiceStatus, PaymentStatus, WebhookStatus


class RawAmount(TypeDecorator):
    """Exact integer amount in the token's smallest unit (uint256 range)."""

    impl = Numeric(78, 0)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return Decimal(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


def _literal_enum(enum_cls, name: str) -> Enum:
    # Persist the literal values ("Pending", ...) behind a CHECK constraint.
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=20,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


PayloadJSON = JSON().with_variant(JSONB(), "postgresql")


class ChainFamily(str, enum.Enum):
    ACCOUNT = "account"
    UTXO = "utxo"


class Chain(Base):
    """Operator-configured chain and the watermark owned by its watcher."""

    __tablename__ = "chains"
    __table_args__ = (CheckConstraint("block_lag >= 0", name="check_block_lag_positive"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), unique=True)
    rpc_url: Mapped[str] = mapped_column(Text)
    family: Mapped[ChainFamily] = mapped_column(
        _literal_enum(ChainFamily, "chain_family"), default=ChainFamily.ACCOUNT
    )
    xpub: Mapped[str] = mapped_column(Text)
    native_symbol: Mapped[str] = mapped_column(String(10))
    decimals: Mapped[int] = mapped_column(SmallInteger)
    last_processed_block: Mapped[int] = mapped_column(BigInteger, default=0)
    # Next derivation index to hand out; only ever incremented.
    next_address_index: Mapped[int] = mapped_column(Integer, default=0)
    block_lag: Mapped[int] = mapped_column(SmallInteger, default=3)


class Token(Base):
    """Token contract accepted on one chain."""

    __tablename__ = "tokens"
    __table_args__ = (UniqueConstraint("chain_id", "symbol", name="unique_token_per_chain"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(ForeignKey("chains.id", ondelete="CASCADE"), index=True)
    symbol: Mapped[str] = mapped_column(String(10))
    contract_address: Mapped[str] = mapped_column(String(64))
    decimals: Mapped[int] = mapped_column(SmallInteger)


class Invoice(Base):
    """Request for a fixed token amount payable to one derived address."""

    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("network", "address_index", name="unique_invoice_address_index"),
        Index("idx_invoices_janitor", "status", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    address: Mapped[str] = mapped_column(String(64), index=True)
    address_index: Mapped[int] = mapped_column(Integer)
    network: Mapped[str] = mapped_column(ForeignKey("chains.name", ondelete="RESTRICT"))
    token: Mapped[str] = mapped_column(String(10))
    amount_raw: Mapped[int] = mapped_column(RawAmount)
    paid_raw: Mapped[int] = mapped_column(RawAmount, default=0)
    status: Mapped[InvoiceStatus] = mapped_column(
        _literal_enum(InvoiceStatus, "invoice_status"), default=InvoiceStatus.PENDING
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(Text, nullable=True)


class Payment(Base):
    """Observed on-chain transfer toward an invoice address."""

    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", "network", name="unique_payment_idempotency"),
        Index("idx_payments_status_network", "status", "network"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    invoice_id: Mapped[str] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), index=True)
    from_address: Mapped[str] = mapped_column(String(64))
    to_address: Mapped[str] = mapped_column(String(64))
    network: Mapped[str] = mapped_column(String(50))
    token: Mapped[str] = mapped_column(String(10))
    tx_hash: Mapped[str] = mapped_column(String(66))
    log_index: Mapped[int] = mapped_column(Integer, default=-1)
    amount_raw: Mapped[int] = mapped_column(RawAmount)
    block_number: Mapped[int] = mapped_column(BigInteger)
    status: Mapped[PaymentStatus] = mapped_column(
        _literal_enum(PaymentStatus, "payment_status"), default=PaymentStatus.CONFIRMING
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Webhook(Base):
    """Queued merchant notification with retry and lease bookkeeping."""

    __tablename__ = "webhooks"
    __table_args__ = (Index("idx_webhooks_dispatch", "status", "next_retry"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    invoice_id: Mapped[str] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), index=True)
    event_type: Mapped[str] = mapped_column(String(50))
    url: Mapped[str] = mapped_column(Text)
    payload: Mapped[dict] = mapped_column(PayloadJSON)
    status: Mapped[WebhookStatus] = mapped_column(
        _literal_enum(WebhookStatus, "webhook_status"), default=WebhookStatus.PENDING
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=5)
    next_retry: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    lease_owner: Mapped[str | None] = mapped_column(String, nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
