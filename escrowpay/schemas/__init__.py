"""Schema package exports."""
from .escrow_payment import (
    EscrowMetadata,
    EscrowPaymentCreate,
    EscrowPaymentRead,
    PaymentStats,
    ProcessPaymentPayload,
    ReasonPayload,
)

__all__ = [
    "EscrowMetadata",
    "EscrowPaymentCreate",
    "EscrowPaymentRead",
    "PaymentStats",
    "ProcessPaymentPayload",
    "ReasonPayload",
]
