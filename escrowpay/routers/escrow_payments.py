"""Escrow payment endpoints."""
from __future__ import annotations

from collections.abc import Iterator
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from escrowpay.config import EscrowConfig, get_settings
from escrowpay.db import get_sessionmaker
from escrowpay.schemas.escrow_payment import (
    EscrowPaymentCreate,
    EscrowPaymentRead,
    PaymentStats,
    ProcessPaymentPayload,
    ReasonPayload,
)
from escrowpay.security import require_admin_key
from escrowpay.services.escrow_payments import EscrowPaymentManager
from escrowpay.services.orders import SqlOrderStore
from escrowpay.services.paystack import PaystackClient
from escrowpay.utils.errors import PersistenceError, error_response

router = APIRouter(
    prefix="/escrow-payments",
    tags=["escrow-payments"],
)

ERROR_STATUS = {
    "VALIDATION_ERROR": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INVALID_STATE": status.HTTP_409_CONFLICT,
    "AMOUNT_MISMATCH": status.HTTP_409_CONFLICT,
    "PAYMENT_NOT_COMPLETED": status.HTTP_409_CONFLICT,
    "GATEWAY_ERROR": status.HTTP_502_BAD_GATEWAY,
    "PERSISTENCE_ERROR": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_escrow_manager() -> Iterator[EscrowPaymentManager]:
    """Build a manager per request backed by the live Paystack client."""

    settings = get_settings()
    session_factory = get_sessionmaker()
    with PaystackClient.from_settings(settings) as client:
        yield EscrowPaymentManager(
            session_factory,
            client,
            SqlOrderStore(session_factory),
            EscrowConfig.from_settings(settings),
        )


def raise_for_result(result: Any) -> None:
    """Translate a failed manager result into the standard error envelope."""

    if result.success:
        return
    code = result.error_code or "ESCROW_ERROR"
    raise HTTPException(
        status_code=ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST),
        detail=error_response(code, result.error or "Escrow operation failed"),
    )


def _store_unavailable(exc: PersistenceError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=error_response(exc.code, exc.message),
    )


@router.post("", response_model=EscrowPaymentRead, status_code=status.HTTP_201_CREATED)
def create_escrow_payment(
    payload: EscrowPaymentCreate,
    manager: EscrowPaymentManager = Depends(get_escrow_manager),
    actor: str = Depends(require_admin_key),
) -> EscrowPaymentRead:
    result = manager.create_escrow_payment(
        payload.order_id,
        payload.customer_id,
        payload.amount,
        payload.currency,
        payload.metadata,
        actor=actor,
    )
    raise_for_result(result)
    return result.data


@router.get("/stats", response_model=PaymentStats)
def payment_stats(
    manager: EscrowPaymentManager = Depends(get_escrow_manager),
    _actor: str = Depends(require_admin_key),
) -> PaymentStats:
    try:
        return manager.get_payment_stats()
    except PersistenceError as exc:
        raise _store_unavailable(exc) from exc


@router.post("/auto-release")
def auto_release(
    manager: EscrowPaymentManager = Depends(get_escrow_manager),
    _actor: str = Depends(require_admin_key),
) -> dict[str, Any]:
    report = manager.auto_release_escrow_payments()
    return {"released": report.released, "failed": report.failed}


@router.get("/orders/{order_id}", response_model=list[EscrowPaymentRead])
def list_for_order(
    order_id: str,
    manager: EscrowPaymentManager = Depends(get_escrow_manager),
    _actor: str = Depends(require_admin_key),
) -> list[EscrowPaymentRead]:
    try:
        return manager.get_escrow_payments_by_order(order_id)
    except PersistenceError as exc:
        raise _store_unavailable(exc) from exc


@router.post("/verify/{reference}")
def verify_payment(
    reference: str,
    manager: EscrowPaymentManager = Depends(get_escrow_manager),
    actor: str = Depends(require_admin_key),
) -> dict[str, Any]:
    result = manager.verify_payment(reference, actor=actor)
    raise_for_result(result)
    return asdict(result)


@router.get("/{escrow_id}", response_model=EscrowPaymentRead)
def get_escrow_payment(
    escrow_id: str,
    manager: EscrowPaymentManager = Depends(get_escrow_manager),
    _actor: str = Depends(require_admin_key),
) -> EscrowPaymentRead:
    try:
        record = manager.get_escrow_payment_status(escrow_id)
    except PersistenceError as exc:
        raise _store_unavailable(exc) from exc
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("NOT_FOUND", "Escrow payment not found"),
        )
    return record


@router.post("/{escrow_id}/process")
def process_payment(
    escrow_id: str,
    payload: ProcessPaymentPayload,
    manager: EscrowPaymentManager = Depends(get_escrow_manager),
    actor: str = Depends(require_admin_key),
) -> dict[str, Any]:
    result = manager.process_escrow_payment(
        escrow_id, payload.customer_email, payload.callback_url, actor=actor
    )
    raise_for_result(result)
    return asdict(result)


@router.post("/{escrow_id}/release")
def release_payment(
    escrow_id: str,
    payload: ReasonPayload | None = None,
    manager: EscrowPaymentManager = Depends(get_escrow_manager),
    actor: str = Depends(require_admin_key),
) -> dict[str, Any]:
    result = manager.release_escrow_payment(escrow_id, payload.reason if payload else None, actor=actor)
    raise_for_result(result)
    return asdict(result)


@router.post("/{escrow_id}/refund")
def refund_payment(
    escrow_id: str,
    payload: ReasonPayload | None = None,
    manager: EscrowPaymentManager = Depends(get_escrow_manager),
    actor: str = Depends(require_admin_key),
) -> dict[str, Any]:
    result = manager.refund_escrow_payment(escrow_id, payload.reason if payload else None, actor=actor)
    raise_for_result(result)
    return asdict(result)


@router.post("/{escrow_id}/cancel", response_model=EscrowPaymentRead)
def cancel_payment(
    escrow_id: str,
    payload: ReasonPayload | None = None,
    manager: EscrowPaymentManager = Depends(get_escrow_manager),
    actor: str = Depends(require_admin_key),
) -> EscrowPaymentRead:
    result = manager.cancel_escrow_payment(escrow_id, payload.reason if payload else None, actor=actor)
    raise_for_result(result)
    return result.data


__all__ = ["get_escrow_manager", "raise_for_result", "router"]
