"""create escrow payment tables

Revision ID: 20261019_escrow_payments
Revises:
Create Date: 2026-10-19 09:12:41.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_escrow_payments"
down_revision = None
branch_labels = None
depends_on = None

ESCROW_STATUS = sa.Enum(
    "pending", "paid", "released", "refunded", "failed", name="escrowpaymentstatus"
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "escrow_payments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("customer_id", sa.String(length=64), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", ESCROW_STATUS, nullable=False),
        sa.Column("paystack_reference", sa.String(length=128), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("authorization_url", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transfer_reference", sa.String(length=160), nullable=True),
        sa.Column("transfer_reserved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transfer_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("transaction_id", sa.String(length=128), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("release_reason", sa.String(length=255), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_reason", sa.String(length=255), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_escrow_payments_positive_amount"),
        sa.PrimaryKeyConstraint("id", name="pk_escrow_payments"),
        sa.UniqueConstraint("paystack_reference", name="uq_escrow_payments_paystack_reference"),
    )
    op.create_index("ix_escrow_payments_status", "escrow_payments", ["status"])
    op.create_index("ix_escrow_payments_order_created", "escrow_payments", ["order_id", "created_at"])
    op.create_index("ix_escrow_payments_status_expires", "escrow_payments", ["status", "expires_at"])
    op.create_index("ix_escrow_payments_customer_id", "escrow_payments", ["customer_id"])
    op.create_index("ix_escrow_payments_transfer_reference", "escrow_payments", ["transfer_reference"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_orders"),
    )
    op.create_index("ix_orders_status", "orders", ["status"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_audit_logs"),
    )
    op.create_index("ix_audit_logs_entity_id", "audit_logs", ["entity_id"])

    op.create_table(
        "paystack_webhook_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_key", sa.String(length=200), nullable=False),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("reference", sa.String(length=160), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw_json", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_paystack_webhook_events"),
        sa.UniqueConstraint("event_key", name="uq_paystack_webhook_events_event_key"),
    )
    op.create_index("ix_paystack_webhook_events_kind", "paystack_webhook_events", ["kind"])

    op.create_table(
        "scheduler_locks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("owner", sa.String(length=64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_scheduler_locks"),
        sa.UniqueConstraint("name", name="uq_scheduler_locks_name"),
    )


def downgrade() -> None:
    op.drop_table("scheduler_locks")
    op.drop_index("ix_paystack_webhook_events_kind", table_name="paystack_webhook_events")
    op.drop_table("paystack_webhook_events")
    op.drop_index("ix_audit_logs_entity_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_orders_status", table_name="orders")
    op.drop_table("orders")
    for index in (
        "ix_escrow_payments_transfer_reference",
        "ix_escrow_payments_customer_id",
        "ix_escrow_payments_status_expires",
        "ix_escrow_payments_order_created",
        "ix_escrow_payments_status",
    ):
        op.drop_index(index, table_name="escrow_payments")
    op.drop_table("escrow_payments")
    ESCROW_STATUS.drop(op.get_bind(), checkfirst=True)
