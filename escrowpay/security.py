"""Security dependencies for admin API key validation."""
from __future__ import annotations

import hmac
import logging

from fastapi import Header, HTTPException, status

from escrowpay.config import get_settings
from escrowpay.utils.errors import error_response

logger = logging.getLogger(__name__)

ADMIN_ACTOR = "apikey:admin"


def _extract_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """Read the key from ``Authorization: Bearer ...`` or ``X-API-Key``."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def require_admin_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str:
    """Validate the admin API key and return the audit actor name."""

    expected = get_settings().ADMIN_API_KEY
    if not expected:
        logger.error("Admin endpoint called but ADMIN_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response("API_KEY_NOT_CONFIGURED", "Admin API key is not configured."),
        )

    token = _extract_key(authorization, x_api_key)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("NO_API_KEY", "API key required."),
        )
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("UNAUTHORIZED", "Invalid API key"),
        )
    return ADMIN_ACTOR


__all__ = ["ADMIN_ACTOR", "require_admin_key"]
