"""Background sweeps scheduled by APScheduler."""
from __future__ import annotations

import logging

from escrowpay.config import EscrowConfig, get_settings
from escrowpay.db import get_sessionmaker
from escrowpay.services.escrow_payments import EscrowPaymentManager
from escrowpay.services.orders import SqlOrderStore
from escrowpay.services.paystack import PaystackClient
from escrowpay.utils.errors import PersistenceError

logger = logging.getLogger(__name__)


def build_manager(client: PaystackClient) -> EscrowPaymentManager:
    session_factory = get_sessionmaker()
    return EscrowPaymentManager(
        session_factory,
        client,
        SqlOrderStore(session_factory),
        EscrowConfig.from_settings(get_settings()),
    )


def auto_release_once() -> None:
    """Release paid escrows whose orders were delivered."""

    with PaystackClient.from_settings() as client:
        report = build_manager(client).auto_release_escrow_payments()
    if report.failed:
        logger.warning("Auto-release left failures", extra={"failed": report.failed})


def expire_pending_once() -> None:
    """Fail pending escrows whose hold window elapsed."""

    with PaystackClient.from_settings() as client:
        try:
            build_manager(client).expire_pending_payments()
        except PersistenceError:
            logger.error("Expiry sweep skipped; store unavailable")


def reconcile_transfers_once() -> None:
    """Resolve transfers and refunds whose outcome was unknown when they were sent."""

    with PaystackClient.from_settings() as client:
        report = build_manager(client).reconcile_outstanding_transfers()
    if report.unresolved:
        logger.info("Settlements still unresolved", extra={"unresolved": report.unresolved})


__all__ = ["auto_release_once", "build_manager", "expire_pending_once", "reconcile_transfers_once"]
