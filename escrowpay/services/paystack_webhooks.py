"""Services handling Paystack webhook callbacks."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Mapping

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from escrowpay.config import get_settings
from escrowpay.models.paystack_webhook import PaystackWebhookEvent
from escrowpay.services.escrow_payments import EscrowPaymentManager
from escrowpay.utils.audit import sanitize_payload_for_audit
from escrowpay.utils.errors import error_response
from escrowpay.utils.time import utcnow

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"
TRANSFER_OUTCOMES = {
    "transfer.success": True,
    "transfer.failed": False,
    "transfer.reversed": False,
}
# Failures Paystack should redeliver instead of being recorded as handled.
RETRYABLE_ERROR_CODES = frozenset({"GATEWAY_ERROR", "PERSISTENCE_ERROR", "PAYMENT_NOT_COMPLETED"})


def _get_header(headers: Mapping[str, str], key: str) -> str | None:
    for h_key, value in headers.items():
        if h_key.lower() == key.lower():
            return value
    return None


def compute_signature(secret: str, body: bytes) -> str:
    """HMAC-SHA512 hex digest of the raw request body, as Paystack signs it."""

    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def verify_paystack_signature(raw_body: bytes, headers: Mapping[str, str]) -> None:
    """Raise ``HTTPException`` unless the body carries a valid Paystack signature."""

    secret = get_settings().PAYSTACK_SECRET_KEY
    if not secret:
        logger.error("Paystack webhook received but PAYSTACK_SECRET_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response("WEBHOOK_SECRET_NOT_CONFIGURED", "Paystack secret key is not configured."),
        )

    provided = _get_header(headers, SIGNATURE_HEADER)
    if not provided:
        logger.warning("Paystack webhook without signature header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("WEBHOOK_SIGNATURE_MISSING", "Signature header missing."),
        )

    if not hmac.compare_digest(compute_signature(secret, raw_body), provided.strip()):
        logger.warning("Paystack webhook signature mismatch")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("WEBHOOK_SIGNATURE_INVALID", "Invalid Paystack webhook signature."),
        )


def parse_event(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except ValueError:
        payload = None
    if not isinstance(payload, dict) or not payload.get("event"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("WEBHOOK_PAYLOAD_INVALID", "Invalid Paystack webhook payload."),
        )
    return payload


def _event_key(kind: str, data: Mapping[str, Any]) -> str:
    identifier = data.get("id") or data.get("reference") or data.get("transfer_code")
    if identifier is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("MISSING_EVENT_ID", "Webhook event has no identifier."),
        )
    return f"{kind}:{identifier}"[:200]


def _register_event(db: Session, kind: str, event_key: str, reference: str | None, payload: dict[str, Any]) -> PaystackWebhookEvent:
    """Persist the event once; a second delivery is reported as a replay."""

    replay = HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=error_response("WEBHOOK_REPLAY", "Duplicate Paystack webhook event detected."),
    )
    existing = db.scalar(select(PaystackWebhookEvent.id).where(PaystackWebhookEvent.event_key == event_key))
    if existing is not None:
        logger.warning("Replay detected for Paystack webhook", extra={"event_key": event_key})
        raise replay

    event = PaystackWebhookEvent(
        event_key=event_key,
        kind=kind,
        reference=reference,
        raw_json=sanitize_payload_for_audit(payload),
        received_at=utcnow(),
    )
    try:
        db.add(event)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning("Replay detected for Paystack webhook", extra={"event_key": event_key})
        raise replay
    return event


def _forget_event(db: Session, event: PaystackWebhookEvent, event_key: str) -> None:
    """Drop the replay marker so a redelivery of the event is processed again."""

    try:
        db.delete(event)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not remove Paystack webhook event", extra={"event_key": event_key})


def _retry_later(db: Session, event: PaystackWebhookEvent, error_code: str | None) -> HTTPException:
    event_key = event.event_key
    _forget_event(db, event, event_key)
    logger.warning(
        "Paystack webhook left for redelivery",
        extra={"event_key": event_key, "error_code": error_code},
    )
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=error_response("WEBHOOK_PROCESSING_FAILED", "Webhook could not be processed; retry later."),
    )


def handle_event(db: Session, manager: EscrowPaymentManager, payload: dict[str, Any]) -> PaystackWebhookEvent:
    """Record the event and route it to the escrow payment manager.

    A failure that may succeed later (gateway or database unavailable, charge
    not yet settled) removes the event again and raises a 503 so Paystack
    redelivers it.
    """

    kind = str(payload.get("event"))
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    reference = data.get("reference")
    event = _register_event(db, kind, _event_key(kind, data), reference, payload)

    if kind == "charge.success" and reference:
        result = manager.verify_payment(reference, actor="paystack:webhook")
        if not result.success:
            logger.warning(
                "Webhook charge could not be confirmed",
                extra={"reference": reference, "error": result.error, "error_code": result.error_code},
            )
            if result.error_code in RETRYABLE_ERROR_CODES:
                raise _retry_later(db, event, result.error_code)
    elif kind in TRANSFER_OUTCOMES and reference:
        outcome = manager.apply_transfer_outcome(
            reference,
            TRANSFER_OUTCOMES[kind],
            transaction_id=data.get("transfer_code"),
            actor="paystack:webhook",
        )
        if not outcome.success:
            logger.info(
                "Transfer webhook could not be applied",
                extra={"reference": reference, "error_code": outcome.error_code},
            )
            if outcome.error_code in RETRYABLE_ERROR_CODES:
                raise _retry_later(db, event, outcome.error_code)
    elif kind == "charge.failed":
        logger.info("Paystack charge failed", extra={"reference": reference})
    elif kind == "refund.processed":
        logger.info("Paystack refund processed", extra={"reference": reference})
    else:
        logger.info("Unhandled Paystack event type", extra={"kind": kind})

    event.processed_at = utcnow()
    db.commit()
    logger.info("Paystack webhook processed", extra={"kind": kind, "reference": reference})
    return event


__all__ = [
    "compute_signature",
    "handle_event",
    "parse_event",
    "verify_paystack_signature",
]
