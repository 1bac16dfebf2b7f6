"""Escrow payment model."""
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import CheckConstraint, DateTime, Enum as SqlEnum, Index, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class EscrowPaymentStatus(str, PyEnum):
    """Lifecycle status of an escrow payment."""

    PENDING = "pending"
    PAID = "paid"
    RELEASED = "released"
    REFUNDED = "refunded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {EscrowPaymentStatus.RELEASED, EscrowPaymentStatus.REFUNDED, EscrowPaymentStatus.FAILED}
)


class EscrowPayment(Base):
    """Customer funds held between checkout and delivery."""

    __tablename__ = "escrow_payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        Index("ix_escrow_payments_status", "status"),
        Index("ix_escrow_payments_order_created", "order_id", "created_at"),
        Index("ix_escrow_payments_status_expires", "status", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[EscrowPaymentStatus] = mapped_column(
        SqlEnum(EscrowPaymentStatus, values_callable=lambda enum: [member.value for member in enum]),
        default=EscrowPaymentStatus.PENDING,
        nullable=False,
    )
    paystack_reference: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    authorization_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    transfer_reference: Mapped[str | None] = mapped_column(String(160), nullable=True, index=True)
    transfer_reserved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transfer_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    release_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
