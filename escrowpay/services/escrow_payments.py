"""Escrow payment lifecycle.

``EscrowPaymentManager`` is the only component that mutates
``EscrowPayment.status``. Transitions:

    pending  -> paid       verified successful payment
    paid     -> released   successful transfer to the merchant
    paid     -> refunded   successful refund
    released -> refunded   post-release clawback
    pending  -> failed     expiry or explicit cancellation

Every transition is written as ``UPDATE ... WHERE status IN (<expected>)``;
zero affected rows means another request moved the record first. Gateway
calls never run inside an open database transaction.

Money leaves only after a reservation: ``transfer_reference`` for a release,
``refund_requested_at`` for a refund. Either one blocks the other operation
until the gateway outcome is known, and an unanswered reservation is settled
against the gateway once the settlement grace period has passed.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable, Collection, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from escrowpay.config import EscrowConfig
from escrowpay.models.escrow_payment import EscrowPayment, EscrowPaymentStatus
from escrowpay.schemas.escrow_payment import (
    EscrowMetadata,
    EscrowPaymentCreate,
    EscrowPaymentRead,
    PaymentStats,
)
from escrowpay.services.orders import OrderStore
from escrowpay.services.paystack import (
    FAILED_REFUND_STATUSES,
    FAILED_TRANSFER_STATUSES,
    SUCCESSFUL_TRANSACTION,
    SUCCESSFUL_TRANSFER,
    GatewayResponse,
    PaymentGateway,
    to_minor_units,
)
from escrowpay.utils.audit import log_audit
from escrowpay.utils.errors import (
    AmountMismatchError,
    EscrowError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
    sanitize_gateway_message,
)
from escrowpay.utils.results import (
    AutoReleaseReport,
    EscrowReleaseResult,
    PaymentResult,
    ReconciliationReport,
    ServiceResult,
)
from escrowpay.utils.time import ensure_utc, epoch_millis, utcnow

logger = logging.getLogger(__name__)

AUTO_RELEASE_REASON = "Order delivered - auto-release"
TRANSFER_REASON = "Escrow payment release"
DEFAULT_REFUND_REASON = "Customer request"
EXPIRED_REASON = "expired"
CANCELLED_REASON = "cancelled"

NOT_PENDING = "Escrow payment is not in pending status"
NOT_PAID = "Escrow payment is not in paid status"
NOT_REFUNDABLE = "Escrow payment cannot be refunded"
NOT_FOUND = "Escrow payment not found"
TRANSFER_IN_PROGRESS = "A transfer for this escrow payment is already in progress"
REFUND_IN_PROGRESS = "A refund for this escrow payment is already in progress"
TRANSFER_OUTSTANDING = "Escrow payment has an outstanding transfer; refund once it settles"
REFUND_CONFIRMED_REASON = "Refund confirmed by gateway"

REFUNDABLE_STATUSES = frozenset({EscrowPaymentStatus.PAID, EscrowPaymentStatus.RELEASED})

ORDER_CHUNK_SIZE = 500
_REFERENCE_UNSAFE = re.compile(r"[^A-Za-z0-9.=-]+")


def _to_decimal(value: Any) -> Decimal:
    """Accept Decimal, int, float or str; floats go through ``str`` to avoid binary artefacts."""

    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValidationError(f"Invalid money amount: {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValidationError(f"Invalid money amount: {value!r}") from exc


def _describe_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "Invalid escrow payment"


def gateway_reference_for(order_id: str, created_at: datetime) -> str:
    """``escrow-<order>-<millis>-<nonce>``, restricted to characters Paystack accepts."""

    safe_order = _REFERENCE_UNSAFE.sub("-", order_id).strip("-")[:40] or "order"
    return f"escrow-{safe_order}-{epoch_millis(created_at)}-{uuid4().hex[:6]}"


def transfer_reference_for(escrow_id: str, attempt: int) -> str:
    """Deterministic per attempt; a new attempt never reuses an earlier reference."""

    return f"trf-{escrow_id.replace('-', '')}-{attempt}"


def _chunks(values: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _is_duplicate_reference(message: str | None) -> bool:
    return "duplicate" in (message or "").lower()


def _transfer_outcome(response: GatewayResponse) -> bool | None:
    """``True`` settled, ``False`` never happened or failed, ``None`` still undecided."""

    if response.status and response.transaction_status == SUCCESSFUL_TRANSFER:
        return True
    if response.status and (response.transaction_status or "") in FAILED_TRANSFER_STATUSES:
        return False
    if not response.status and response.http_status == 404:
        # the gateway never received the transfer
        return False
    return None


def _refund_outcome(response: GatewayResponse) -> bool | None:
    if response.status:
        return (response.transaction_status or "") not in FAILED_REFUND_STATUSES
    if response.http_status == 404:
        return False
    return None


def _refund_transaction_id(response: GatewayResponse, fallback: str) -> str:
    refund_id = response.data.get("id")
    return str(refund_id) if refund_id is not None else (response.reference or fallback)


class EscrowPaymentManager:
    """Owns every status transition of escrow payments.

    Each operation opens its own short-lived session and re-reads the record,
    so no mutable state is cached between calls. Expected failures are
    returned as result objects; only the query helpers raise
    :class:`PersistenceError` when the store is unreachable.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        gateway: PaymentGateway,
        order_store: OrderStore,
        config: EscrowConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._orders = order_store
        self.config = config or EscrowConfig()
        self._clock = clock

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Escrow payment store failure")
            raise PersistenceError("Escrow payment store unavailable") from exc
        finally:
            db.close()

    @staticmethod
    def _load(db: Session, escrow_id: str) -> EscrowPayment:
        record = db.get(EscrowPayment, escrow_id, populate_existing=True)
        if record is None:
            raise NotFoundError(NOT_FOUND, details={"escrow_id": escrow_id})
        return record

    def _transition(
        self,
        db: Session,
        escrow_id: str,
        expected: Collection[EscrowPaymentStatus],
        *criteria: Any,
        **values: Any,
    ) -> bool:
        """Compare-and-swap update; ``False`` when the precondition no longer holds."""

        stmt = (
            update(EscrowPayment)
            .where(EscrowPayment.id == escrow_id, EscrowPayment.status.in_(sorted(expected)), *criteria)
            .values(updated_at=self._clock(), **values)
            .execution_options(synchronize_session=False)
        )
        return db.execute(stmt).rowcount == 1

    @staticmethod
    def _read(record: EscrowPayment) -> EscrowPaymentRead:
        return EscrowPaymentRead.model_validate(record)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_escrow_payment(
        self,
        order_id: str,
        customer_id: str,
        amount: Decimal | int | float | str,
        currency: str | None = None,
        metadata: EscrowMetadata | dict[str, Any] | None = None,
        *,
        actor: str | None = None,
    ) -> ServiceResult[EscrowPaymentRead]:
        """Persist a ``pending`` escrow record. No gateway call is made here."""

        try:
            payload = EscrowPaymentCreate(
                order_id=order_id,
                customer_id=customer_id,
                amount=_to_decimal(amount),
                currency=currency or self.config.default_currency,
                metadata=metadata,
            )
        except PydanticValidationError as exc:
            return ServiceResult.failure(_describe_validation_error(exc), ValidationError.code)
        except ValidationError as exc:
            return ServiceResult.from_error(exc)

        now = self._clock()
        record = EscrowPayment(
            id=str(uuid4()),
            order_id=payload.order_id,
            customer_id=payload.customer_id,
            amount=payload.amount,
            currency=payload.currency,
            status=EscrowPaymentStatus.PENDING,
            paystack_reference=gateway_reference_for(payload.order_id, now),
            created_at=now,
            updated_at=now,
            expires_at=now + self.config.hold_window,
            metadata_json=payload.metadata.to_json() if payload.metadata else {},
        )
        try:
            with self._session() as db:
                db.add(record)
                log_audit(
                    db,
                    actor=actor or "checkout",
                    action="ESCROW_PAYMENT_CREATED",
                    entity="EscrowPayment",
                    entity_id=record.id,
                    data={
                        "order_id": record.order_id,
                        "amount": str(record.amount),
                        "currency": record.currency,
                        "paystack_reference": record.paystack_reference,
                    },
                )
                db.commit()
                created = self._read(record)
        except PersistenceError as exc:
            return ServiceResult.from_error(exc)

        logger.info(
            "Escrow payment created",
            extra={"escrow_id": created.id, "order_id": created.order_id, "amount": str(created.amount)},
        )
        return ServiceResult.ok(created)

    # ------------------------------------------------------------------
    # Customer payment
    # ------------------------------------------------------------------
    def process_escrow_payment(
        self,
        escrow_id: str,
        customer_email: str,
        callback_url: str | None = None,
        *,
        actor: str | None = None,
    ) -> PaymentResult:
        """Initialise the gateway transaction and hand back the redirect URL.

        The record stays ``pending``: only :meth:`verify_payment` moves it to
        ``paid``. Retries reuse the record's gateway reference.
        """

        if not customer_email or "@" not in customer_email:
            return PaymentResult.from_error(ValidationError("A valid customer email is required"))

        try:
            with self._session() as db:
                record = self._load(db, escrow_id)
                if record.status != EscrowPaymentStatus.PENDING:
                    raise InvalidStateError(NOT_PENDING, details={"status": record.status.value})
                snapshot = self._read(record)
        except EscrowError as exc:
            return PaymentResult.from_error(exc)

        metadata = {
            **snapshot.metadata,
            "escrowId": snapshot.id,
            "orderId": snapshot.order_id,
            "customerId": snapshot.customer_id,
        }
        try:
            response = self._gateway.initialize_transaction(
                amount_minor=to_minor_units(snapshot.amount),
                currency=snapshot.currency,
                email=customer_email,
                reference=snapshot.gateway_reference,
                metadata=metadata,
                callback_url=callback_url,
            )
        except GatewayError as exc:
            logger.warning(
                "Payment initialization failed",
                extra={"escrow_id": escrow_id, "error": exc.message, "ambiguous": exc.ambiguous},
            )
            return PaymentResult(
                success=False,
                reference=snapshot.gateway_reference,
                error=sanitize_gateway_message(exc.message),
                error_code=GatewayError.code,
            )

        if not response.status:
            logger.warning(
                "Payment initialization declined",
                extra={"escrow_id": escrow_id, "gateway_message": response.message},
            )
            return PaymentResult(
                success=False,
                reference=snapshot.gateway_reference,
                error=sanitize_gateway_message(response.message, "Payment initialization failed"),
                error_code=GatewayError.code,
            )

        try:
            with self._session() as db:
                if not self._transition(
                    db,
                    escrow_id,
                    {EscrowPaymentStatus.PENDING},
                    authorization_url=response.authorization_url,
                ):
                    db.rollback()
                    raise InvalidStateError(NOT_PENDING)
                log_audit(
                    db,
                    actor=actor or "checkout",
                    action="ESCROW_PAYMENT_INITIALIZED",
                    entity="EscrowPayment",
                    entity_id=escrow_id,
                    data={
                        "customer_email": customer_email,
                        "paystack_reference": snapshot.gateway_reference,
                    },
                )
                db.commit()
        except EscrowError as exc:
            return PaymentResult.from_error(exc, reference=snapshot.gateway_reference)

        logger.info("Escrow payment initialized", extra={"escrow_id": escrow_id})
        return PaymentResult(
            success=True,
            authorization_url=response.authorization_url,
            reference=response.reference or snapshot.gateway_reference,
        )

    def verify_payment(self, reference: str, *, actor: str | None = None) -> PaymentResult:
        """Confirm a transaction with the gateway; the sole ``pending -> paid`` path.

        Safe to call repeatedly: an already confirmed record is left untouched.
        """

        reference = (reference or "").strip()
        if not reference:
            return PaymentResult.from_error(ValidationError("A transaction reference is required"))

        try:
            response = self._gateway.verify_transaction(reference)
        except GatewayError as exc:
            logger.warning("Payment verification failed", extra={"reference": reference, "error": exc.message})
            return PaymentResult(
                success=False,
                reference=reference,
                error=sanitize_gateway_message(exc.message),
                error_code=GatewayError.code,
            )

        if not response.status:
            return PaymentResult(
                success=False,
                reference=reference,
                error=sanitize_gateway_message(response.message, "Payment verification failed"),
                error_code=GatewayError.code,
            )
        if response.transaction_status != SUCCESSFUL_TRANSACTION:
            return PaymentResult(
                success=False,
                reference=reference,
                error=f"Payment not completed (status: {response.transaction_status or 'unknown'})",
                error_code="PAYMENT_NOT_COMPLETED",
            )

        try:
            self._confirm_paid(reference, response, actor=actor)
        except EscrowError as exc:
            return PaymentResult.from_error(exc, reference=reference)
        return PaymentResult(success=True, reference=response.reference or reference)

    def _confirm_paid(self, reference: str, response: GatewayResponse, *, actor: str | None) -> None:
        with self._session() as db:
            record = db.scalar(
                select(EscrowPayment)
                .where(EscrowPayment.paystack_reference == reference)
                .execution_options(populate_existing=True)
            )
            if record is None:
                logger.warning("Verified reference has no escrow payment", extra={"reference": reference})
                raise NotFoundError(NOT_FOUND, details={"reference": reference})

            if record.status in (EscrowPaymentStatus.PAID, EscrowPaymentStatus.RELEASED, EscrowPaymentStatus.REFUNDED):
                return
            if record.status == EscrowPaymentStatus.FAILED:
                logger.error(
                    "Payment confirmed for a failed escrow payment; manual refund required",
                    extra={"escrow_id": record.id, "reference": reference},
                )
                raise InvalidStateError(NOT_PENDING, details={"status": record.status.value})

            expected_minor = to_minor_units(record.amount)
            amount_ok = response.amount_minor is None or response.amount_minor == expected_minor
            currency_ok = response.currency is None or response.currency.upper() == record.currency
            if not (amount_ok and currency_ok):
                logger.error(
                    "Verified payment does not match escrow amount",
                    extra={
                        "escrow_id": record.id,
                        "expected_minor": expected_minor,
                        "received_minor": response.amount_minor,
                        "currency": response.currency,
                    },
                )
                raise AmountMismatchError("Verified amount does not match escrow payment")

            escrow_id = record.id
            if not self._transition(
                db,
                escrow_id,
                {EscrowPaymentStatus.PENDING},
                status=EscrowPaymentStatus.PAID,
                paid_at=self._clock(),
            ):
                db.rollback()
                current = self._load(db, escrow_id)
                if current.status == EscrowPaymentStatus.FAILED:
                    raise InvalidStateError(NOT_PENDING, details={"status": current.status.value})
                return
            log_audit(
                db,
                actor=actor or "paystack",
                action="ESCROW_PAYMENT_PAID",
                entity="EscrowPayment",
                entity_id=escrow_id,
                data={"paystack_reference": reference, "amount_minor": response.amount_minor},
            )
            db.commit()
        logger.info("Escrow payment confirmed", extra={"escrow_id": escrow_id, "reference": reference})

    # ------------------------------------------------------------------
    # Release / refund
    # ------------------------------------------------------------------
    def release_escrow_payment(
        self, escrow_id: str, reason: str | None = None, *, actor: str | None = None
    ) -> EscrowReleaseResult:
        """Transfer held funds to the merchant and mark the record ``released``.

        Only the request that reserved the transfer reference talks to the
        gateway. A reservation still inside the settlement grace period means
        another request is in flight; an older one is settled against the
        gateway before a new attempt is reserved.
        """

        settled = self._settle_previous_transfer(escrow_id, actor=actor)
        if settled is not None:
            return settled

        try:
            transfer_reference, snapshot = self._reserve_transfer(escrow_id)
        except InvalidStateError as exc:
            logger.warning(
                "Release rejected for escrow payment",
                extra={"escrow_id": escrow_id, "error": exc.message, **exc.details},
            )
            return EscrowReleaseResult.from_error(exc)
        except EscrowError as exc:
            return EscrowReleaseResult.from_error(exc)

        recipient = snapshot.metadata.get("merchantAccount") or self.config.default_merchant_account
        try:
            response = self._gateway.transfer(
                source=self.config.transfer_source,
                amount_minor=to_minor_units(snapshot.amount),
                currency=snapshot.currency,
                recipient=recipient,
                reason=TRANSFER_REASON,
                reference=transfer_reference,
            )
        except GatewayError as exc:
            logger.warning(
                "Escrow transfer failed",
                extra={"escrow_id": escrow_id, "error": exc.message, "ambiguous": exc.ambiguous},
            )
            if not exc.ambiguous and not _is_duplicate_reference(exc.message):
                self._clear_transfer(escrow_id, transfer_reference)
            return EscrowReleaseResult(
                success=False, error=sanitize_gateway_message(exc.message), error_code=GatewayError.code
            )

        if not response.status or (response.transaction_status or "") in FAILED_TRANSFER_STATUSES:
            if _is_duplicate_reference(response.message):
                logger.error(
                    "Gateway reports the transfer reference as already used; left for reconciliation",
                    extra={"escrow_id": escrow_id, "transfer_reference": transfer_reference},
                )
            else:
                logger.warning(
                    "Escrow transfer declined",
                    extra={"escrow_id": escrow_id, "gateway_message": response.message},
                )
                self._clear_transfer(escrow_id, transfer_reference)
            return EscrowReleaseResult(
                success=False,
                error=sanitize_gateway_message(response.message, "Transfer failed"),
                error_code=GatewayError.code,
            )

        transaction_id = response.reference or transfer_reference
        try:
            with self._session() as db:
                if not self._transition(
                    db,
                    escrow_id,
                    {EscrowPaymentStatus.PAID},
                    EscrowPayment.transfer_reference == transfer_reference,
                    status=EscrowPaymentStatus.RELEASED,
                    released_at=self._clock(),
                    release_reason=reason,
                    transaction_id=transaction_id,
                ):
                    db.rollback()
                    raise InvalidStateError(NOT_PAID)
                log_audit(
                    db,
                    actor=actor or "system",
                    action="ESCROW_PAYMENT_RELEASED",
                    entity="EscrowPayment",
                    entity_id=escrow_id,
                    data={"transfer_reference": transfer_reference, "reason": reason},
                )
                db.commit()
        except EscrowError as exc:
            logger.error(
                "Transfer succeeded but ledger update failed; reconciliation required",
                extra={"escrow_id": escrow_id, "transfer_reference": transfer_reference, "error": exc.message},
            )
            return EscrowReleaseResult.from_error(exc)

        logger.info("Escrow payment released", extra={"escrow_id": escrow_id, "transaction_id": transaction_id})
        return EscrowReleaseResult(success=True, transaction_id=transaction_id)

    def _settle_previous_transfer(self, escrow_id: str, *, actor: str | None) -> EscrowReleaseResult | None:
        """Final result when an earlier attempt decides the release, ``None`` when a new one may start."""

        try:
            with self._session() as db:
                record = self._load(db, escrow_id)
                status = record.status
                reference = record.transfer_reference
                reserved_at = record.transfer_reserved_at
        except EscrowError as exc:
            return EscrowReleaseResult.from_error(exc)

        if status != EscrowPaymentStatus.PAID or reference is None:
            return None
        if self._within_grace(reserved_at):
            logger.warning(
                "Release attempted while a transfer is in flight",
                extra={"escrow_id": escrow_id, "transfer_reference": reference},
            )
            return EscrowReleaseResult.from_error(InvalidStateError(TRANSFER_IN_PROGRESS))

        try:
            response = self._gateway.verify_transfer(reference)
        except GatewayError as exc:
            return EscrowReleaseResult(
                success=False, error=sanitize_gateway_message(exc.message), error_code=GatewayError.code
            )
        outcome = _transfer_outcome(response)
        if outcome is None:
            return EscrowReleaseResult.from_error(InvalidStateError(TRANSFER_IN_PROGRESS))

        result = self.apply_transfer_outcome(reference, outcome, transaction_id=response.reference, actor=actor)
        if not result.success:
            return EscrowReleaseResult(success=False, error=result.error, error_code=result.error_code)
        if outcome:
            return EscrowReleaseResult(success=True, transaction_id=result.data.transaction_id)
        return None

    @staticmethod
    def _check_releasable(record: EscrowPayment) -> None:
        if record.status != EscrowPaymentStatus.PAID:
            raise InvalidStateError(NOT_PAID, details={"status": record.status.value})
        if record.refund_requested_at is not None:
            raise InvalidStateError(REFUND_IN_PROGRESS)
        if record.transfer_reference is not None:
            raise InvalidStateError(TRANSFER_IN_PROGRESS)

    def _reserve_transfer(self, escrow_id: str) -> tuple[str, EscrowPaymentRead]:
        """Record the outstanding transfer reference before calling the gateway."""

        with self._session() as db:
            record = self._load(db, escrow_id)
            self._check_releasable(record)

            attempt = record.transfer_attempts + 1
            reference = transfer_reference_for(record.id, attempt)
            if not self._transition(
                db,
                escrow_id,
                {EscrowPaymentStatus.PAID},
                EscrowPayment.transfer_reference.is_(None),
                EscrowPayment.refund_requested_at.is_(None),
                transfer_reference=reference,
                transfer_attempts=attempt,
                transfer_reserved_at=self._clock(),
            ):
                db.rollback()
                self._check_releasable(self._load(db, escrow_id))
                raise InvalidStateError(TRANSFER_IN_PROGRESS)
            db.commit()
            return reference, self._read(self._load(db, escrow_id))

    def _clear_transfer(self, escrow_id: str, transfer_reference: str) -> None:
        try:
            with self._session() as db:
                self._transition(
                    db,
                    escrow_id,
                    {EscrowPaymentStatus.PAID},
                    EscrowPayment.transfer_reference == transfer_reference,
                    transfer_reference=None,
                    transfer_reserved_at=None,
                )
                db.commit()
        except PersistenceError:
            logger.error(
                "Could not clear declined transfer reference",
                extra={"escrow_id": escrow_id, "transfer_reference": transfer_reference},
            )

    def _within_grace(self, started_at: datetime | None) -> bool:
        started_at = ensure_utc(started_at)
        return started_at is not None and started_at > self._clock() - self.config.settlement_grace

    def refund_escrow_payment(
        self, escrow_id: str, reason: str | None = None, *, actor: str | None = None
    ) -> EscrowReleaseResult:
        """Refund the full amount; allowed from ``paid`` and, as a clawback, from ``released``.

        A ``paid`` record with an outstanding transfer is not refundable until
        that transfer settles. A refund whose outcome is unknown (timeout)
        blocks both release and refund until it is settled against the gateway.
        """

        settled = self._settle_previous_refund(escrow_id, reason, actor=actor)
        if settled is not None:
            return settled

        try:
            snapshot = self._reserve_refund(escrow_id)
        except InvalidStateError as exc:
            logger.warning(
                "Refund rejected for escrow payment",
                extra={"escrow_id": escrow_id, "error": exc.message, **exc.details},
            )
            return EscrowReleaseResult.from_error(exc)
        except EscrowError as exc:
            return EscrowReleaseResult.from_error(exc)

        try:
            response = self._gateway.refund(
                transaction_reference=snapshot.gateway_reference,
                amount_minor=to_minor_units(snapshot.amount),
                reason=reason or DEFAULT_REFUND_REASON,
            )
        except GatewayError as exc:
            logger.warning(
                "Escrow refund failed",
                extra={"escrow_id": escrow_id, "error": exc.message, "ambiguous": exc.ambiguous},
            )
            if not exc.ambiguous:
                self._clear_refund(escrow_id)
            return EscrowReleaseResult(
                success=False, error=sanitize_gateway_message(exc.message), error_code=GatewayError.code
            )
        if not response.status:
            logger.warning(
                "Escrow refund declined",
                extra={"escrow_id": escrow_id, "gateway_message": response.message},
            )
            self._clear_refund(escrow_id)
            return EscrowReleaseResult(
                success=False,
                error=sanitize_gateway_message(response.message, "Refund failed"),
                error_code=GatewayError.code,
            )

        return self._finish_refund(
            escrow_id,
            _refund_transaction_id(response, snapshot.gateway_reference),
            reason,
            previous_status=snapshot.status,
            actor=actor,
        )

    def _settle_previous_refund(
        self, escrow_id: str, reason: str | None, *, actor: str | None
    ) -> EscrowReleaseResult | None:
        """Final result when an earlier refund decides the outcome, ``None`` when a new one may start."""

        try:
            with self._session() as db:
                record = self._load(db, escrow_id)
                status = record.status
                requested_at = record.refund_requested_at
                gateway_reference = record.paystack_reference
        except EscrowError as exc:
            return EscrowReleaseResult.from_error(exc)

        if status not in REFUNDABLE_STATUSES or requested_at is None:
            return None
        if self._within_grace(requested_at):
            logger.warning("Refund attempted while a refund is in flight", extra={"escrow_id": escrow_id})
            return EscrowReleaseResult.from_error(InvalidStateError(REFUND_IN_PROGRESS))

        try:
            response = self._gateway.verify_refund(gateway_reference)
        except GatewayError as exc:
            return EscrowReleaseResult(
                success=False, error=sanitize_gateway_message(exc.message), error_code=GatewayError.code
            )
        outcome = _refund_outcome(response)
        if outcome is None:
            return EscrowReleaseResult.from_error(InvalidStateError(REFUND_IN_PROGRESS))
        if outcome:
            return self._finish_refund(
                escrow_id,
                _refund_transaction_id(response, gateway_reference),
                reason,
                previous_status=status,
                actor=actor,
            )
        self._clear_refund(escrow_id)
        return None

    @staticmethod
    def _check_refundable(record: EscrowPayment) -> None:
        if record.status not in REFUNDABLE_STATUSES:
            raise InvalidStateError(NOT_REFUNDABLE, details={"status": record.status.value})
        if record.refund_requested_at is not None:
            raise InvalidStateError(REFUND_IN_PROGRESS)
        if record.status == EscrowPaymentStatus.PAID and record.transfer_reference is not None:
            raise InvalidStateError(TRANSFER_OUTSTANDING, details={"transfer_reference": record.transfer_reference})

    def _reserve_refund(self, escrow_id: str) -> EscrowPaymentRead:
        with self._session() as db:
            record = self._load(db, escrow_id)
            self._check_refundable(record)
            if not self._transition(
                db,
                escrow_id,
                REFUNDABLE_STATUSES,
                EscrowPayment.refund_requested_at.is_(None),
                or_(
                    EscrowPayment.status == EscrowPaymentStatus.RELEASED,
                    EscrowPayment.transfer_reference.is_(None),
                ),
                refund_requested_at=self._clock(),
            ):
                db.rollback()
                self._check_refundable(self._load(db, escrow_id))
                raise InvalidStateError(REFUND_IN_PROGRESS)
            db.commit()
            return self._read(self._load(db, escrow_id))

    def _clear_refund(self, escrow_id: str) -> None:
        try:
            with self._session() as db:
                self._transition(
                    db,
                    escrow_id,
                    REFUNDABLE_STATUSES,
                    EscrowPayment.refund_requested_at.is_not(None),
                    refund_requested_at=None,
                )
                db.commit()
        except PersistenceError:
            logger.error("Could not clear declined refund request", extra={"escrow_id": escrow_id})

    def _finish_refund(
        self,
        escrow_id: str,
        transaction_id: str,
        reason: str | None,
        *,
        previous_status: EscrowPaymentStatus,
        actor: str | None,
    ) -> EscrowReleaseResult:
        try:
            with self._session() as db:
                if not self._transition(
                    db,
                    escrow_id,
                    REFUNDABLE_STATUSES,
                    EscrowPayment.refund_requested_at.is_not(None),
                    status=EscrowPaymentStatus.REFUNDED,
                    refunded_at=self._clock(),
                    refund_reason=reason,
                    transaction_id=transaction_id,
                ):
                    db.rollback()
                    raise InvalidStateError(NOT_REFUNDABLE)
                log_audit(
                    db,
                    actor=actor or "system",
                    action="ESCROW_PAYMENT_REFUNDED",
                    entity="EscrowPayment",
                    entity_id=escrow_id,
                    data={"previous_status": previous_status.value, "reason": reason},
                )
                db.commit()
        except EscrowError as exc:
            logger.error(
                "Refund accepted by gateway but ledger not updated",
                extra={"escrow_id": escrow_id, "transaction_id": transaction_id},
            )
            return EscrowReleaseResult.from_error(exc)

        logger.info("Escrow payment refunded", extra={"escrow_id": escrow_id, "transaction_id": transaction_id})
        return EscrowReleaseResult(success=True, transaction_id=transaction_id)

    # ------------------------------------------------------------------
    # Abandonment
    # ------------------------------------------------------------------
    def cancel_escrow_payment(
        self, escrow_id: str, reason: str | None = None, *, actor: str | None = None
    ) -> ServiceResult[EscrowPaymentRead]:
        """Explicit ``pending -> failed`` (customer or admin cancellation)."""

        try:
            with self._session() as db:
                record = self._load(db, escrow_id)
                if not self._transition(
                    db,
                    escrow_id,
                    {EscrowPaymentStatus.PENDING},
                    status=EscrowPaymentStatus.FAILED,
                    failed_at=self._clock(),
                    failure_reason=reason or CANCELLED_REASON,
                ):
                    db.rollback()
                    raise InvalidStateError(NOT_PENDING, details={"status": record.status.value})
                log_audit(
                    db,
                    actor=actor or "system",
                    action="ESCROW_PAYMENT_FAILED",
                    entity="EscrowPayment",
                    entity_id=escrow_id,
                    data={"reason": reason or CANCELLED_REASON},
                )
                db.commit()
                cancelled = self._read(self._load(db, escrow_id))
        except EscrowError as exc:
            return ServiceResult.from_error(exc)

        logger.info("Escrow payment cancelled", extra={"escrow_id": escrow_id})
        return ServiceResult.ok(cancelled)

    def expire_pending_payments(self, now: datetime | None = None) -> int:
        """Mark ``pending`` records past ``expires_at`` as ``failed``; returns the count."""

        now = now or self._clock()
        expired = 0
        with self._session() as db:
            candidates = list(
                db.scalars(
                    select(EscrowPayment.id).where(
                        EscrowPayment.status == EscrowPaymentStatus.PENDING,
                        EscrowPayment.expires_at <= now,
                    )
                )
            )
            for escrow_id in candidates:
                if self._transition(
                    db,
                    escrow_id,
                    {EscrowPaymentStatus.PENDING},
                    EscrowPayment.expires_at <= now,
                    status=EscrowPaymentStatus.FAILED,
                    failed_at=now,
                    failure_reason=EXPIRED_REASON,
                ):
                    expired += 1
                    log_audit(
                        db,
                        actor="system:expiry",
                        action="ESCROW_PAYMENT_FAILED",
                        entity="EscrowPayment",
                        entity_id=escrow_id,
                        data={"reason": EXPIRED_REASON},
                    )
            db.commit()
        if expired:
            logger.info("Expired pending escrow payments", extra={"count": expired})
        return expired

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------
    def auto_release_escrow_payments(self) -> AutoReleaseReport:
        """Release every ``paid`` escrow whose order has been delivered.

        A failing record never aborts the batch and the sweep never raises.
        """

        report = AutoReleaseReport()
        try:
            delivered = self._orders.get_orders_with_status(self.config.auto_release_order_status)
            candidates: list[str] = []
            if delivered:
                with self._session() as db:
                    for chunk in _chunks(list(dict.fromkeys(delivered)), ORDER_CHUNK_SIZE):
                        candidates.extend(
                            db.scalars(
                                select(EscrowPayment.id)
                                .where(
                                    EscrowPayment.status == EscrowPaymentStatus.PAID,
                                    EscrowPayment.order_id.in_(chunk),
                                )
                                .order_by(EscrowPayment.created_at)
                            )
                        )
        except Exception:  # noqa: BLE001
            logger.exception("Auto-release sweep could not load candidates")
            return report

        for escrow_id in candidates:
            try:
                result = self.release_escrow_payment(escrow_id, AUTO_RELEASE_REASON, actor="system:auto-release")
            except Exception as exc:  # noqa: BLE001
                logger.exception("Auto-release crashed for escrow payment", extra={"escrow_id": escrow_id})
                report.failed[escrow_id] = str(exc) or exc.__class__.__name__
                continue
            if result.success:
                report.released.append(escrow_id)
            else:
                report.failed[escrow_id] = result.error or "Release failed"
                logger.warning(
                    "Auto-release failed for escrow payment",
                    extra={"escrow_id": escrow_id, "error": result.error, "error_code": result.error_code},
                )

        logger.info(
            "Auto-release sweep finished",
            extra={"released": len(report.released), "failed": len(report.failed)},
        )
        return report

    def apply_transfer_outcome(
        self,
        transfer_reference: str,
        succeeded: bool,
        *,
        transaction_id: str | None = None,
        actor: str | None = None,
    ) -> ServiceResult[EscrowPaymentRead]:
        """Settle an outstanding transfer reported by a webhook or the reconciliation sweep."""

        try:
            with self._session() as db:
                record = db.scalar(
                    select(EscrowPayment)
                    .where(EscrowPayment.transfer_reference == transfer_reference)
                    .execution_options(populate_existing=True)
                )
                if record is None:
                    raise NotFoundError(NOT_FOUND, details={"transfer_reference": transfer_reference})
                escrow_id = record.id

                if succeeded and record.status == EscrowPaymentStatus.PAID:
                    if self._transition(
                        db,
                        escrow_id,
                        {EscrowPaymentStatus.PAID},
                        EscrowPayment.transfer_reference == transfer_reference,
                        status=EscrowPaymentStatus.RELEASED,
                        released_at=self._clock(),
                        release_reason="Transfer confirmed by gateway",
                        transaction_id=transaction_id or transfer_reference,
                    ):
                        log_audit(
                            db,
                            actor=actor or "paystack",
                            action="ESCROW_PAYMENT_RELEASED",
                            entity="EscrowPayment",
                            entity_id=escrow_id,
                            data={"transfer_reference": transfer_reference, "source": "reconciliation"},
                        )
                        logger.info("Outstanding transfer reconciled", extra={"escrow_id": escrow_id})
                elif not succeeded and record.status == EscrowPaymentStatus.PAID:
                    self._transition(
                        db,
                        escrow_id,
                        {EscrowPaymentStatus.PAID},
                        EscrowPayment.transfer_reference == transfer_reference,
                        transfer_reference=None,
                        transfer_reserved_at=None,
                    )
                    log_audit(
                        db,
                        actor=actor or "paystack",
                        action="ESCROW_PAYMENT_TRANSFER_FAILED",
                        entity="EscrowPayment",
                        entity_id=escrow_id,
                        data={"transfer_reference": transfer_reference},
                    )
                    logger.warning("Outstanding transfer failed; release may be retried", extra={"escrow_id": escrow_id})
                elif not succeeded and record.status == EscrowPaymentStatus.RELEASED:
                    logger.error(
                        "Transfer failed after escrow release; manual follow-up required",
                        extra={"escrow_id": escrow_id, "transfer_reference": transfer_reference},
                    )
                db.commit()
                current = self._read(self._load(db, escrow_id))
        except EscrowError as exc:
            return ServiceResult.from_error(exc)
        return ServiceResult.ok(current)

    def reconcile_outstanding_transfers(self) -> ReconciliationReport:
        """Re-query the gateway for transfers and refunds left unanswered past the grace period."""

        report = ReconciliationReport()
        cutoff = self._clock() - self.config.settlement_grace
        try:
            with self._session() as db:
                outstanding = db.execute(
                    select(EscrowPayment.id, EscrowPayment.transfer_reference).where(
                        EscrowPayment.status == EscrowPaymentStatus.PAID,
                        EscrowPayment.transfer_reference.is_not(None),
                        or_(EscrowPayment.transfer_reserved_at.is_(None), EscrowPayment.transfer_reserved_at <= cutoff),
                    )
                ).all()
                pending_refunds = list(
                    db.scalars(
                        select(EscrowPayment.id).where(
                            EscrowPayment.status.in_(sorted(REFUNDABLE_STATUSES)),
                            EscrowPayment.refund_requested_at.is_not(None),
                            EscrowPayment.refund_requested_at <= cutoff,
                        )
                    )
                )
        except PersistenceError:
            return report

        for escrow_id, transfer_reference in outstanding:
            try:
                response = self._gateway.verify_transfer(transfer_reference)
            except GatewayError as exc:
                report.unresolved[escrow_id] = exc.message
                continue

            outcome = _transfer_outcome(response)
            if outcome is None:
                report.unresolved[escrow_id] = response.transaction_status or response.message or "pending"
                continue

            result = self.apply_transfer_outcome(
                transfer_reference,
                outcome,
                transaction_id=response.reference,
                actor="system:reconciliation",
            )
            if not result.success:
                report.unresolved[escrow_id] = result.error or "Reconciliation failed"
            elif outcome:
                report.released.append(escrow_id)
            else:
                report.cleared.append(escrow_id)

        for escrow_id in pending_refunds:
            settled = self._settle_previous_refund(
                escrow_id, REFUND_CONFIRMED_REASON, actor="system:reconciliation"
            )
            if settled is None:
                report.cleared.append(escrow_id)
            elif settled.success:
                report.refunded.append(escrow_id)
            else:
                report.unresolved[escrow_id] = settled.error or "Reconciliation failed"

        if outstanding or pending_refunds:
            logger.info(
                "Settlement reconciliation finished",
                extra={
                    "released": len(report.released),
                    "refunded": len(report.refunded),
                    "cleared": len(report.cleared),
                    "unresolved": len(report.unresolved),
                },
            )
        return report

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_escrow_payment_status(self, escrow_id: str) -> EscrowPaymentRead | None:
        """Return the record or ``None``; a missing id is not an error."""

        with self._session() as db:
            record = db.get(EscrowPayment, escrow_id)
            return self._read(record) if record is not None else None

    def get_escrow_payment_by_reference(self, reference: str) -> EscrowPaymentRead | None:
        with self._session() as db:
            record = db.scalar(select(EscrowPayment).where(EscrowPayment.paystack_reference == reference))
            return self._read(record) if record is not None else None

    def get_escrow_payments_by_order(self, order_id: str) -> list[EscrowPaymentRead]:
        """All attempts for an order, newest first."""

        with self._session() as db:
            records = db.scalars(
                select(EscrowPayment)
                .where(EscrowPayment.order_id == order_id)
                .order_by(EscrowPayment.created_at.desc(), EscrowPayment.id.desc())
            )
            return [self._read(record) for record in records]

    def get_payment_stats(self) -> PaymentStats:
        """Fold every record's amount into the bucket of its current status."""

        with self._session() as db:
            rows = db.execute(select(EscrowPayment.status, EscrowPayment.amount)).all()

        buckets = {status: Decimal("0.00") for status in EscrowPaymentStatus}
        for status, amount in rows:
            buckets[status] += Decimal(amount)
        return PaymentStats(
            total_escrow_payments=len(rows),
            pending_amount=buckets[EscrowPaymentStatus.PENDING],
            paid_amount=buckets[EscrowPaymentStatus.PAID],
            released_amount=buckets[EscrowPaymentStatus.RELEASED],
            refunded_amount=buckets[EscrowPaymentStatus.REFUNDED],
            failed_amount=buckets[EscrowPaymentStatus.FAILED],
        )


__all__ = [
    "AUTO_RELEASE_REASON",
    "EscrowPaymentManager",
    "gateway_reference_for",
    "transfer_reference_for",
]
