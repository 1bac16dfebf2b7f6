"""Paystack REST client implementing the payment gateway contract."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol, runtime_checkable

import httpx

from escrowpay.config import Settings, get_settings
from escrowpay.utils.errors import GatewayError

logger = logging.getLogger(__name__)

SUCCESSFUL_TRANSACTION = "success"
SUCCESSFUL_TRANSFER = "success"
FAILED_TRANSFER_STATUSES = frozenset({"failed", "reversed", "abandoned", "rejected"})
FAILED_REFUND_STATUSES = frozenset({"failed"})


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount to the smallest unit expected by Paystack (x100)."""

    normalized = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return int((normalized * 100).to_integral_value())


def from_minor_units(amount: int | str) -> Decimal:
    return (Decimal(str(amount)) / Decimal("100")).quantize(Decimal("0.01"))


@dataclass
class GatewayResponse:
    """Normalised Paystack answer: ``status`` mirrors the API's top-level flag."""

    status: bool
    message: str | None = None
    http_status: int | None = None
    reference: str | None = None
    authorization_url: str | None = None
    access_code: str | None = None
    transaction_status: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class PaymentGateway(Protocol):
    """Hosted payment processor used by the escrow manager.

    Business declines come back as ``GatewayResponse(status=False)``; transport
    failures and timeouts raise :class:`GatewayError`.
    """

    def initialize_transaction(
        self,
        *,
        amount_minor: int,
        currency: str,
        email: str,
        reference: str,
        metadata: dict[str, Any],
        callback_url: str | None = None,
    ) -> GatewayResponse: ...

    def verify_transaction(self, reference: str) -> GatewayResponse: ...

    def transfer(
        self,
        *,
        source: str,
        amount_minor: int,
        currency: str,
        recipient: str,
        reason: str,
        reference: str,
    ) -> GatewayResponse: ...

    def verify_transfer(self, reference: str) -> GatewayResponse: ...

    def refund(self, *, transaction_reference: str, amount_minor: int, reason: str) -> GatewayResponse: ...

    def verify_refund(self, transaction_reference: str) -> GatewayResponse: ...


class PaystackClient:
    """Thin synchronous wrapper around the Paystack API."""

    def __init__(
        self,
        secret_key: str,
        *,
        base_url: str = "https://api.paystack.co",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not secret_key:
            raise RuntimeError("Paystack secret key is missing; configure PAYSTACK_SECRET_KEY.")
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PaystackClient":
        """Instantiate a client using the cached application settings."""

        settings = settings or get_settings()
        return cls(
            settings.PAYSTACK_SECRET_KEY or "",
            base_url=settings.PAYSTACK_BASE_URL,
            timeout=settings.PAYSTACK_TIMEOUT_SECONDS,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "PaystackClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> tuple[int, dict[str, Any]]:
        try:
            response = self._client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as exc:
            logger.warning("Paystack request timed out", extra={"path": path})
            raise GatewayError("Payment gateway timed out", ambiguous=True) from exc
        except httpx.HTTPError as exc:
            logger.warning("Paystack request failed", extra={"path": path, "error": str(exc)})
            raise GatewayError("Payment gateway unreachable", ambiguous=True) from exc

        try:
            body = response.json()
        except ValueError as exc:
            if response.status_code >= 500:
                raise GatewayError(
                    "Payment gateway returned an invalid response",
                    ambiguous=True,
                    status_code=response.status_code,
                ) from exc
            body = {"status": False, "message": response.text}

        if not isinstance(body, dict):
            body = {"status": False, "message": "Unexpected gateway payload"}
        if response.status_code >= 500:
            raise GatewayError(
                body.get("message") or "Payment gateway server error",
                ambiguous=True,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            body["status"] = False
        return response.status_code, body

    @staticmethod
    def _parse(reply: tuple[int, dict[str, Any]], default_message: str) -> GatewayResponse:
        http_status, body = reply
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        ok = bool(body.get("status"))
        amount = data.get("amount")
        return GatewayResponse(
            status=ok,
            message=body.get("message") or (None if ok else default_message),
            http_status=http_status,
            reference=data.get("reference"),
            authorization_url=data.get("authorization_url"),
            access_code=data.get("access_code"),
            transaction_status=data.get("status"),
            amount_minor=int(amount) if amount is not None else None,
            currency=data.get("currency"),
            data=data,
        )

    def initialize_transaction(
        self,
        *,
        amount_minor: int,
        currency: str,
        email: str,
        reference: str,
        metadata: dict[str, Any],
        callback_url: str | None = None,
    ) -> GatewayResponse:
        payload: dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency,
            "email": email,
            "reference": reference,
            "metadata": metadata,
        }
        if callback_url:
            payload["callback_url"] = callback_url
        reply = self._request("POST", "/transaction/initialize", json=payload)
        return self._parse(reply, "Payment initialization failed")

    def verify_transaction(self, reference: str) -> GatewayResponse:
        reply = self._request("GET", f"/transaction/verify/{reference}")
        return self._parse(reply, "Payment verification failed")

    def transfer(
        self,
        *,
        source: str,
        amount_minor: int,
        currency: str,
        recipient: str,
        reason: str,
        reference: str,
    ) -> GatewayResponse:
        reply = self._request(
            "POST",
            "/transfer",
            json={
                "source": source,
                "amount": amount_minor,
                "currency": currency,
                "recipient": recipient,
                "reason": reason,
                "reference": reference,
            },
        )
        return self._parse(reply, "Transfer failed")

    def verify_transfer(self, reference: str) -> GatewayResponse:
        reply = self._request("GET", f"/transfer/verify/{reference}")
        return self._parse(reply, "Transfer verification failed")

    def refund(self, *, transaction_reference: str, amount_minor: int, reason: str) -> GatewayResponse:
        reply = self._request(
            "POST",
            "/refund",
            json={
                "transaction": transaction_reference,
                "amount": amount_minor,
                "merchant_note": reason,
            },
        )
        return self._parse(reply, "Refund failed")

    def verify_refund(self, transaction_reference: str) -> GatewayResponse:
        """Latest refund recorded against a transaction; 404 when there is none."""

        http_status, body = self._request("GET", "/refund", params={"transaction": transaction_reference})
        refunds = body.get("data") if isinstance(body.get("data"), list) else []
        if body.get("status") and not refunds:
            return GatewayResponse(status=False, message="Refund not found", http_status=404)
        latest = refunds[0] if refunds and isinstance(refunds[0], dict) else {}
        return self._parse((http_status, {**body, "data": latest}), "Refund lookup failed")


__all__ = [
    "FAILED_REFUND_STATUSES",
    "FAILED_TRANSFER_STATUSES",
    "GatewayResponse",
    "PaymentGateway",
    "PaystackClient",
    "SUCCESSFUL_TRANSACTION",
    "SUCCESSFUL_TRANSFER",
    "from_minor_units",
    "to_minor_units",
]
