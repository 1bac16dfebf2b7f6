"""Process-wide scheduler state reported by the health endpoint."""
from __future__ import annotations

from datetime import datetime

from escrowpay.utils.time import utcnow

_scheduler_started_at: datetime | None = None


def set_scheduler_active(active: bool) -> None:
    global _scheduler_started_at
    _scheduler_started_at = utcnow() if active else None


def is_scheduler_active() -> bool:
    return _scheduler_started_at is not None


def scheduler_started_at() -> datetime | None:
    return _scheduler_started_at
