"""Result wrappers returned by the escrow payment manager.

Expected failures (validation, state preconditions, gateway declines) are
reported through these objects instead of exceptions, so HTTP handlers and
scheduled jobs can branch on ``success`` without ``try``/``except``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, TypeVar

from escrowpay.utils.errors import EscrowError

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """Generic success/failure wrapper.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful
        error: Human-readable error message if failed
        error_code: Machine-readable code (``VALIDATION_ERROR``, ``INVALID_STATE``...)
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def ok(cls, data: T) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str, error_code: str | None = None) -> ServiceResult[T]:
        return cls(success=False, error=error, error_code=error_code)

    @classmethod
    def from_error(cls, exc: EscrowError) -> ServiceResult[T]:
        return cls(success=False, error=exc.message, error_code=exc.code)


@dataclass
class PaymentResult:
    """Outcome of initialising or verifying a customer payment."""

    success: bool
    authorization_url: str | None = None
    reference: str | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def from_error(cls, exc: EscrowError, reference: str | None = None) -> PaymentResult:
        return cls(success=False, reference=reference, error=exc.message, error_code=exc.code)


@dataclass
class EscrowReleaseResult:
    """Outcome of a release (transfer) or refund."""

    success: bool
    transaction_id: str | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def from_error(cls, exc: EscrowError) -> EscrowReleaseResult:
        return cls(success=False, error=exc.message, error_code=exc.code)


@dataclass
class AutoReleaseReport:
    """Per-record outcome of one auto-release sweep."""

    released: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return len(self.released) + len(self.failed)


@dataclass
class ReconciliationReport:
    """Outcome of re-querying the gateway for outstanding transfers and refunds."""

    released: list[str] = field(default_factory=list)
    refunded: list[str] = field(default_factory=list)
    cleared: list[str] = field(default_factory=list)
    unresolved: dict[str, str] = field(default_factory=dict)


__all__ = [
    "AutoReleaseReport",
    "EscrowReleaseResult",
    "PaymentResult",
    "ReconciliationReport",
    "ServiceResult",
]
