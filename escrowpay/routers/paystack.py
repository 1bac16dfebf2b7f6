"""Routes for Paystack webhooks and the customer checkout callback."""
from __future__ import annotations

import logging
from urllib.parse import quote

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from escrowpay.config import get_settings
from escrowpay.db import get_db
from escrowpay.routers.escrow_payments import get_escrow_manager
from escrowpay.services import paystack_webhooks
from escrowpay.services.escrow_payments import EscrowPaymentManager
from escrowpay.utils.errors import PersistenceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/paystack", tags=["paystack"])


@router.post("/webhook", status_code=status.HTTP_200_OK)
async def paystack_webhook(
    request: Request,
    db: Session = Depends(get_db),
    manager: EscrowPaymentManager = Depends(get_escrow_manager),
) -> dict[str, object]:
    raw_body = await request.body()
    paystack_webhooks.verify_paystack_signature(raw_body, request.headers)
    payload = paystack_webhooks.parse_event(raw_body)

    event = await run_in_threadpool(paystack_webhooks.handle_event, db, manager, payload)
    return {"received": True, "event_key": event.event_key}


def _redirect(path: str) -> RedirectResponse:
    base_url = get_settings().APP_URL.rstrip("/")
    return RedirectResponse(url=f"{base_url}{path}", status_code=status.HTTP_303_SEE_OTHER)


@router.get("/callback")
def paystack_callback(
    reference: str | None = None,
    trxref: str | None = None,
    manager: EscrowPaymentManager = Depends(get_escrow_manager),
) -> RedirectResponse:
    """Verify the payment the customer just completed and send them back to the shop."""

    reference = reference or trxref
    if not reference:
        return _redirect("/checkout?error=missing_reference")

    result = manager.verify_payment(reference, actor="paystack:callback")
    if not result.success:
        logger.info(
            "Checkout callback verification failed",
            extra={"reference": reference, "error_code": result.error_code},
        )
        if result.error_code == "NOT_FOUND":
            return _redirect("/checkout?error=payment_not_found")
        return _redirect("/checkout?error=payment_failed")

    try:
        record = manager.get_escrow_payment_by_reference(reference)
    except PersistenceError:
        return _redirect("/checkout?error=verification_failed")
    if record is None:
        return _redirect("/checkout?error=payment_not_found")
    return _redirect(f"/order-success?order={quote(record.order_id, safe='')}")


__all__ = ["router"]
