"""Escrow payment schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from escrowpay.models.escrow_payment import EscrowPaymentStatus
from escrowpay.utils.time import ensure_utc


class EscrowMetadata(BaseModel):
    """Contextual data attached to an escrow payment.

    ``merchantAccount`` is the Paystack transfer recipient code used on
    release; other keys are kept as-is and forwarded to the gateway.
    """

    merchant_account: str | None = Field(
        default=None,
        validation_alias=AliasChoices("merchantAccount", "merchant_account"),
        serialization_alias="merchantAccount",
    )
    notes: str | None = None

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class EscrowPaymentCreate(BaseModel):
    order_id: str = Field(min_length=1, max_length=64)
    customer_id: str = Field(min_length=1, max_length=64)
    amount: Decimal = Field(gt=Decimal("0"), max_digits=18, decimal_places=2)
    currency: str = Field(default="GHS", pattern="^[A-Z]{3}$")
    metadata: EscrowMetadata | None = None

    @field_validator("order_id", "customer_id", mode="before")
    @classmethod
    def _strip_ids(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("currency", mode="before")
    @classmethod
    def _upper_currency(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class EscrowPaymentRead(BaseModel):
    id: str
    order_id: str
    customer_id: str
    amount: Decimal
    currency: str
    status: EscrowPaymentStatus
    gateway_reference: str = Field(validation_alias=AliasChoices("paystack_reference", "gateway_reference"))
    created_at: datetime
    expires_at: datetime
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("metadata_json", "metadata")
    )
    authorization_url: str | None = None
    paid_at: datetime | None = None
    transfer_reference: str | None = None
    transfer_reserved_at: datetime | None = None
    transaction_id: str | None = None
    released_at: datetime | None = None
    release_reason: str | None = None
    refund_requested_at: datetime | None = None
    refunded_at: datetime | None = None
    refund_reason: str | None = None
    failed_at: datetime | None = None
    failure_reason: str | None = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator(
        "created_at",
        "expires_at",
        "paid_at",
        "transfer_reserved_at",
        "released_at",
        "refund_requested_at",
        "refunded_at",
        "failed_at",
    )
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


class ProcessPaymentPayload(BaseModel):
    customer_email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255)
    callback_url: str | None = None


class ReasonPayload(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class PaymentStats(BaseModel):
    total_escrow_payments: int = 0
    pending_amount: Decimal = Decimal("0.00")
    paid_amount: Decimal = Decimal("0.00")
    released_amount: Decimal = Decimal("0.00")
    refunded_amount: Decimal = Decimal("0.00")
    failed_amount: Decimal = Decimal("0.00")
