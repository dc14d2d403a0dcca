"""freeze confirmed payments

Revision ID: 0004_confirmed_payment_guard
Revises: 0003_webhooks
Create Date: 2026-10-18
"""

from alembic import op


revision = "0004_confirmed_payment_guard"
down_revision = "0003_webhooks"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_confirmed_payment_update()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF OLD.status = 'Confirmed' THEN
                RAISE EXCEPTION 'payment % is Confirmed; % is not allowed', OLD.id, TG_OP;
            END IF;
            RETURN NEW;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_payments_confirmed_immutable
        BEFORE UPDATE ON payments
        FOR EACH ROW
        EXECUTE FUNCTION prevent_confirmed_payment_update();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_payments_confirmed_immutable ON payments;")
    op.execute("DROP FUNCTION IF EXISTS prevent_confirmed_payment_update();")
