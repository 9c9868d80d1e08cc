"""create escrow ledger tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

payment_status = sa.Enum("OPEN", "CONFIRMED", "REFUNDED", name="paymentstatus")
event_type = sa.Enum("PAYMENT_CREATED", "PAYMENT_CONFIRMED", "PAYMENT_REFUNDED", name="eventtype")


def upgrade() -> None:
    op.create_table(
        "escrow_payments",
        sa.Column("order_id", sa.String(length=66), primary_key=True),
        sa.Column("payer", sa.String(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("status", payment_status, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_escrow_payments_order_id", "escrow_payments", ["order_id"])

    op.create_table(
        "escrow_accounts",
        sa.Column("identity", sa.String(), primary_key=True),
        sa.Column("balance", sa.BigInteger(), nullable=False),
    )
    op.create_index("ix_escrow_accounts_identity", "escrow_accounts", ["identity"])

    op.create_table(
        "escrow_events",
        sa.Column("block", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tx_ref", sa.String(length=66), nullable=False),
        sa.Column("event_type", event_type, nullable=False),
        sa.Column("order_id", sa.String(length=66), nullable=False),
        sa.Column("payer", sa.String(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_escrow_events_tx_ref", "escrow_events", ["tx_ref"], unique=True)
    op.create_index("ix_escrow_events_event_type", "escrow_events", ["event_type"])
    op.create_index("ix_escrow_events_order_id", "escrow_events", ["order_id"])


def downgrade() -> None:
    op.drop_table("escrow_events")
    op.drop_table("escrow_accounts")
    op.drop_table("escrow_payments")
    event_type.drop(op.get_bind(), checkfirst=True)
    payment_status.drop(op.get_bind(), checkfirst=True)
