"""initial chain, token, and invoice schema

Revision ID: 0001_chainpay
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_chainpay"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "chains",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("rpc_url", sa.Text(), nullable=False),
        sa.Column("family", sa.String(length=20), nullable=False, server_default="account"),
        sa.Column("xpub", sa.Text(), nullable=False),
        sa.Column("native_symbol", sa.String(length=10), nullable=False),
        sa.Column("decimals", sa.SmallInteger(), nullable=False),
        sa.Column("last_processed_block", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("block_lag", sa.SmallInteger(), nullable=False, server_default="3"),
        sa.Column("next_address_index", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
        sa.CheckConstraint("block_lag >= 0", name="check_block_lag_positive"),
        sa.CheckConstraint("family IN ('account', 'utxo')", name="chain_family"),
    )

    op.create_table(
        "tokens",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("symbol", sa.String(length=10), nullable=False),
        sa.Column("contract_address", sa.String(length=64), nullable=False),
        sa.Column("decimals", sa.SmallInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["chain_id"], ["chains.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("chain_id", "symbol", name="unique_token_per_chain"),
    )
    op.create_index("ix_tokens_chain_id", "tokens", ["chain_id"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("address", sa.String(length=64), nullable=False),
        sa.Column("address_index", sa.Integer(), nullable=False),
        sa.Column("network", sa.String(length=50), nullable=False),
        sa.Column("token", sa.String(length=10), nullable=False),
        sa.Column("amount_raw", sa.Numeric(78, 0), nullable=False),
        sa.Column("paid_raw", sa.Numeric(78, 0), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="Pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("webhook_url", sa.Text(), nullable=True),
        sa.Column("webhook_secret", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["network"], ["chains.name"], ondelete="RESTRICT"),
        sa.UniqueConstraint("network", "address_index", name="unique_invoice_address_index"),
        sa.CheckConstraint("status IN ('Pending', 'Paid', 'Expired')", name="invoice_status"),
    )
    op.create_index("ix_invoices_address", "invoices", ["address"])
    op.create_index("idx_invoices_janitor", "invoices", ["status", "expires_at"])
    # Watchers match recipients case-insensitively.
    op.create_index("idx_invoices_address_lower", "invoices", [sa.text("lower(address)")])


def downgrade() -> None:
    op.drop_index("idx_invoices_address_lower", table_name="invoices")
    op.drop_index("idx_invoices_janitor", table_name="invoices")
    op.drop_index("ix_invoices_address", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_tokens_chain_id", table_name="tokens")
    op.drop_table("tokens")
    op.drop_table("chains")
