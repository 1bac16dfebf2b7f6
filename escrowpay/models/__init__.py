"""ORM models package."""
from .audit import AuditLog
from .base import Base
from .escrow_payment import TERMINAL_STATUSES, EscrowPayment, EscrowPaymentStatus
from .order import Order
from .paystack_webhook import PaystackWebhookEvent
from .scheduler_lock import SchedulerLock

__all__ = [
    "AuditLog",
    "Base",
    "EscrowPayment",
    "EscrowPaymentStatus",
    "Order",
    "PaystackWebhookEvent",
    "SchedulerLock",
    "TERMINAL_STATUSES",
]
