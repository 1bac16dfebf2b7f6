"""API routers for the escrow payment service."""
from fastapi import APIRouter

from . import escrow_payments, health, paystack


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(escrow_payments.router)
    api_router.include_router(paystack.router)
    return api_router
