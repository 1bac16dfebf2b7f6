"""Health check endpoint."""
from __future__ import annotations

import hashlib
import logging

from fastapi import APIRouter
from sqlalchemy import text

from escrowpay.config import get_settings
from escrowpay.core.runtime_state import is_scheduler_active, scheduler_started_at
from escrowpay.db import get_engine
from escrowpay.services.scheduler_lock import describe_scheduler_lock

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)


def _db_status() -> str:
    """Return 'ok' if the DB is reachable, 'error' otherwise."""

    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except Exception:  # noqa: BLE001
        logger.exception("DB health check failed")
        return "error"


def _fingerprint(value: str | None) -> str | None:
    if not value:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]


def _scheduler_lock_status() -> dict[str, object]:
    try:
        return describe_scheduler_lock()
    except Exception:  # noqa: BLE001
        logger.exception("Scheduler lock lookup failed")
        return {"status": "unknown", "owner": None}


@router.get("", summary="Health check")
def healthcheck() -> dict[str, object]:
    """Report database reachability, scheduler state and Paystack configuration."""

    settings = get_settings()
    db_status = _db_status()
    db_ok = db_status == "ok"
    started_at = scheduler_started_at()
    return {
        "status": "ok" if db_ok else "degraded",
        "db_ok": db_ok,
        "db_status": db_status,
        "paystack": {
            "secret_key_configured": bool(settings.PAYSTACK_SECRET_KEY),
            "secret_key_fingerprint": _fingerprint(settings.PAYSTACK_SECRET_KEY),
            "base_url": settings.PAYSTACK_BASE_URL,
        },
        "scheduler_config_enabled": bool(settings.SCHEDULER_ENABLED),
        "scheduler_running": is_scheduler_active(),
        "scheduler_started_at": started_at.isoformat() if started_at else None,
        "scheduler_lock": _scheduler_lock_status() if db_ok else {"status": "unknown", "owner": None},
    }
