"""Error taxonomy and helpers for standardized error responses."""
from __future__ import annotations

import re
from typing import Any

GATEWAY_MESSAGE_MAX_LENGTH = 200
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]+")
_EMAIL = re.compile(r"[\w.+-]+@[\w-]+(\.[\w-]+)+")
_MARKUP = re.compile(r"<[^>]*>")


class EscrowError(Exception):
    """Base class for expected escrow failures."""

    code = "ESCROW_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(EscrowError):
    """Malformed input, rejected before any I/O."""

    code = "VALIDATION_ERROR"


class NotFoundError(EscrowError):
    code = "NOT_FOUND"


class InvalidStateError(EscrowError):
    """The record is not in the status the operation requires."""

    code = "INVALID_STATE"


class AmountMismatchError(EscrowError):
    """The gateway confirmed a different amount or currency than the escrow holds."""

    code = "AMOUNT_MISMATCH"


class GatewayError(EscrowError):
    """The payment gateway declined the call or could not be reached.

    ``ambiguous`` is set when the outcome is unknown (timeout, dropped
    connection): the gateway may still have executed the operation.
    """

    code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        *,
        ambiguous: bool = False,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.ambiguous = ambiguous
        self.status_code = status_code


class PersistenceError(EscrowError):
    """The backing store failed to read or write."""

    code = "PERSISTENCE_ERROR"


def sanitize_gateway_message(message: str | None, fallback: str = "Payment gateway error") -> str:
    """Strip markup, control characters and e-mail addresses from a gateway message."""

    if not message:
        return fallback
    text = _MARKUP.sub("", str(message))
    text = _CONTROL_CHARS.sub(" ", text)
    text = _EMAIL.sub("***@***", text)
    text = " ".join(text.split())
    if not text:
        return fallback
    if len(text) > GATEWAY_MESSAGE_MAX_LENGTH:
        text = text[: GATEWAY_MESSAGE_MAX_LENGTH - 3].rstrip() + "..."
    return text


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


__all__ = [
    "AmountMismatchError",
    "EscrowError",
    "GatewayError",
    "InvalidStateError",
    "NotFoundError",
    "PersistenceError",
    "ValidationError",
    "error_response",
    "sanitize_gateway_message",
]
