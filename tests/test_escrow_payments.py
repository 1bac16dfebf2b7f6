"""Escrow payment lifecycle through the manager."""
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from escrowpay.config import EscrowConfig
from escrowpay.db import get_sessionmaker
from escrowpay.models import AuditLog, EscrowPayment, EscrowPaymentStatus
from escrowpay.services.escrow_payments import (
    AUTO_RELEASE_REASON,
    TRANSFER_IN_PROGRESS,
    TRANSFER_OUTSTANDING,
    EscrowPaymentManager,
    transfer_reference_for,
)
from escrowpay.services.orders import SqlOrderStore
from escrowpay.services.paystack import GatewayResponse
from escrowpay.utils.errors import PersistenceError


def _status(manager: EscrowPaymentManager, escrow_id: str) -> EscrowPaymentStatus:
    record = manager.get_escrow_payment_status(escrow_id)
    assert record is not None
    return record.status


def _create(manager: EscrowPaymentManager, order_id: str = "order-1", amount="45.99", **kwargs):
    result = manager.create_escrow_payment(order_id, "customer-1", amount, "GHS", **kwargs)
    assert result.success, result.error
    return result.data


def test_create_then_read_returns_pending_record(manager, clock):
    created = _create(manager, amount=45.99)

    record = manager.get_escrow_payment_status(created.id)
    assert record is not None
    assert record.status == EscrowPaymentStatus.PENDING
    assert record.amount == Decimal("45.99")
    assert record.currency == "GHS"
    assert record.gateway_reference.startswith("escrow-order-1-")
    assert record.expires_at == clock.now + EscrowConfig().hold_window


def test_create_uses_default_currency_and_keeps_metadata(manager):
    result = manager.create_escrow_payment(
        "order-7", "customer-7", "12.50", metadata={"merchantAccount": "RCP_123", "channel": "web"}
    )

    assert result.success
    assert result.data.currency == "GHS"
    assert result.data.metadata == {"merchantAccount": "RCP_123", "channel": "web"}


@pytest.mark.parametrize(
    "order_id, customer_id, amount, currency",
    [
        ("order-1", "customer-1", 0, "GHS"),
        ("order-1", "customer-1", "-5.00", "GHS"),
        ("", "customer-1", "10.00", "GHS"),
        ("order-1", "  ", "10.00", "GHS"),
        ("order-1", "customer-1", "10.005", "GHS"),
        ("order-1", "customer-1", "ten", "GHS"),
        ("order-1", "customer-1", "10.00", "CEDI"),
    ],
)
def test_create_rejects_invalid_input_without_writing(manager, db_session, order_id, customer_id, amount, currency):
    result = manager.create_escrow_payment(order_id, customer_id, amount, currency)

    assert result.success is False
    assert result.error_code == "VALIDATION_ERROR"
    assert db_session.scalar(select(func.count()).select_from(EscrowPayment)) == 0


def test_create_writes_audit_entry(manager, db_session):
    created = _create(manager)

    entry = db_session.scalars(select(AuditLog).where(AuditLog.entity_id == created.id)).one()
    assert entry.action == "ESCROW_PAYMENT_CREATED"
    assert entry.data_json["amount"] == "45.99"
    assert entry.data_json["paystack_reference"].startswith("***")


def test_process_initializes_without_marking_paid(manager, gateway):
    """Initialisation alone never moves the record to paid."""

    created = _create(manager)

    result = manager.process_escrow_payment(created.id, "buyer@example.com", "https://shop.test/callback")

    assert result.success is True
    assert result.reference == created.gateway_reference
    assert result.authorization_url == f"https://checkout.paystack.com/{created.gateway_reference}"
    (call,) = gateway.calls_named("initialize")
    assert call["amount_minor"] == 4599
    assert call["currency"] == "GHS"
    assert call["callback_url"] == "https://shop.test/callback"
    assert call["metadata"]["escrowId"] == created.id
    assert call["metadata"]["orderId"] == "order-1"
    record = manager.get_escrow_payment_status(created.id)
    assert record.status == EscrowPaymentStatus.PENDING
    assert record.authorization_url == result.authorization_url

    gateway.mark_paid(created.gateway_reference, "45.99")
    verified = manager.verify_payment(created.gateway_reference)
    assert verified.success is True
    record = manager.get_escrow_payment_status(created.id)
    assert record.status == EscrowPaymentStatus.PAID
    assert record.paid_at is not None


def test_process_gateway_decline_leaves_record_pending(manager, gateway):
    created = _create(manager)
    gateway.initialize_response = GatewayResponse(status=False, message="<b>Invalid</b> email buyer@example.com")

    result = manager.process_escrow_payment(created.id, "buyer@example.com")

    assert result.success is False
    assert result.error_code == "GATEWAY_ERROR"
    assert "<b>" not in result.error
    assert "buyer@example.com" not in result.error
    assert _status(manager, created.id) == EscrowPaymentStatus.PENDING


def test_process_rejects_missing_email_and_unknown_id(manager, gateway):
    created = _create(manager)

    assert manager.process_escrow_payment(created.id, "").error_code == "VALIDATION_ERROR"
    assert manager.process_escrow_payment("missing-id", "buyer@example.com").error_code == "NOT_FOUND"
    assert gateway.calls_named("initialize") == []


def test_verify_twice_is_idempotent(manager, gateway, db_session):
    created = _create(manager)
    gateway.mark_paid(created.gateway_reference, "45.99")

    first = manager.verify_payment(created.gateway_reference)
    second = manager.verify_payment(created.gateway_reference)

    assert first.success is True
    assert second.success is True
    assert _status(manager, created.id) == EscrowPaymentStatus.PAID
    paid_entries = db_session.scalars(
        select(AuditLog).where(AuditLog.action == "ESCROW_PAYMENT_PAID", AuditLog.entity_id == created.id)
    ).all()
    assert len(paid_entries) == 1


def test_verify_rejects_amount_mismatch(manager, gateway):
    created = _create(manager)
    gateway.mark_paid(created.gateway_reference, "10.00")

    result = manager.verify_payment(created.gateway_reference)

    assert result.success is False
    assert result.error_code == "AMOUNT_MISMATCH"
    assert _status(manager, created.id) == EscrowPaymentStatus.PENDING


def test_verify_incomplete_transaction_is_not_success(manager, gateway):
    created = _create(manager)
    gateway.transactions[created.gateway_reference] = GatewayResponse(
        status=True, reference=created.gateway_reference, transaction_status="abandoned"
    )

    result = manager.verify_payment(created.gateway_reference)

    assert result.success is False
    assert result.error_code == "PAYMENT_NOT_COMPLETED"
    assert _status(manager, created.id) == EscrowPaymentStatus.PENDING


def test_verify_reference_without_escrow_payment_is_not_found(manager, gateway):
    gateway.mark_paid("escrow-unknown-1", "45.99")

    result = manager.verify_payment("escrow-unknown-1")

    assert result.success is False
    assert result.error_code == "NOT_FOUND"
    assert result.reference == "escrow-unknown-1"


def test_release_pending_record_is_rejected(manager, gateway):
    created = _create(manager)

    result = manager.release_escrow_payment(created.id)

    assert result.success is False
    assert result.error == "Escrow payment is not in paid status"
    assert result.error_code == "INVALID_STATE"
    assert _status(manager, created.id) == EscrowPaymentStatus.PENDING
    assert gateway.calls_named("transfer") == []


def test_release_transfers_to_merchant_account(manager, gateway, make_paid_escrow):
    escrow_id = make_paid_escrow(metadata={"merchantAccount": "RCP_merchant"})

    result = manager.release_escrow_payment(escrow_id, "Customer confirmed delivery")

    assert result.success is True
    (call,) = gateway.calls_named("transfer")
    assert call["recipient"] == "RCP_merchant"
    assert call["source"] == "balance"
    assert call["amount_minor"] == 4599
    assert call["reference"] == transfer_reference_for(escrow_id, 1)
    record = manager.get_escrow_payment_status(escrow_id)
    assert record.status == EscrowPaymentStatus.RELEASED
    assert record.release_reason == "Customer confirmed delivery"
    assert record.released_at is not None
    assert record.transaction_id == result.transaction_id


def test_release_defaults_to_configured_merchant(manager, gateway, make_paid_escrow):
    escrow_id = make_paid_escrow()

    assert manager.release_escrow_payment(escrow_id).success
    assert gateway.calls_named("transfer")[0]["recipient"] == "default-merchant-account"


def test_release_failure_then_retry_succeeds(manager, gateway, make_paid_escrow):
    escrow_id = make_paid_escrow()
    gateway.transfer_response = GatewayResponse(status=False, message="Insufficient balance")

    failed = manager.release_escrow_payment(escrow_id)

    assert failed.success is False
    assert failed.error_code == "GATEWAY_ERROR"
    assert failed.error == "Insufficient balance"
    record = manager.get_escrow_payment_status(escrow_id)
    assert record.status == EscrowPaymentStatus.PAID
    assert record.transfer_reference is None
    assert record.released_at is None

    gateway.transfer_response = None
    retried = manager.release_escrow_payment(escrow_id)

    assert retried.success is True
    record = manager.get_escrow_payment_status(escrow_id)
    assert record.status == EscrowPaymentStatus.RELEASED
    assert record.released_at is not None
    references = [call["reference"] for call in gateway.calls_named("transfer")]
    assert references == [transfer_reference_for(escrow_id, 1), transfer_reference_for(escrow_id, 2)]


def test_concurrent_release_only_one_wins(manager, gateway, make_paid_escrow):
    escrow_id = make_paid_escrow()
    gateway.reject_duplicate_references = True
    nested_results = []
    gateway.on_transfer = lambda: nested_results.append(manager.release_escrow_payment(escrow_id))

    outer = manager.release_escrow_payment(escrow_id)

    (inner,) = nested_results
    assert sorted([outer.success, inner.success]) == [False, True]
    loser = outer if not outer.success else inner
    assert loser.error_code == "INVALID_STATE"
    assert loser.error == TRANSFER_IN_PROGRESS
    assert _status(manager, escrow_id) == EscrowPaymentStatus.RELEASED
    assert len(gateway.calls_named("transfer")) == 1
    assert manager.get_escrow_payment_status(escrow_id).transfer_reference == transfer_reference_for(escrow_id, 1)


def test_refund_during_release_is_rejected(manager, gateway, make_paid_escrow):
    escrow_id = make_paid_escrow()
    nested_results = []
    gateway.on_transfer = lambda: nested_results.append(manager.refund_escrow_payment(escrow_id))

    released = manager.release_escrow_payment(escrow_id)

    (refund,) = nested_results
    assert released.success is True
    assert refund.success is False
    assert refund.error_code == "INVALID_STATE"
    assert refund.error == TRANSFER_OUTSTANDING
    assert gateway.calls_named("refund") == []
    assert _status(manager, escrow_id) == EscrowPaymentStatus.RELEASED


def test_refund_paid_record(manager, gateway, make_paid_escrow):
    escrow_id = make_paid_escrow()
    reference = manager.get_escrow_payment_status(escrow_id).gateway_reference

    result = manager.refund_escrow_payment(escrow_id)

    assert result.success is True
    assert result.transaction_id == "3018284"
    (call,) = gateway.calls_named("refund")
    assert call == {"transaction_reference": reference, "amount_minor": 4599, "reason": "Customer request"}
    record = manager.get_escrow_payment_status(escrow_id)
    assert record.status == EscrowPaymentStatus.REFUNDED
    assert record.refunded_at is not None


def test_refund_released_record_claws_back(manager, make_paid_escrow):
    escrow_id = make_paid_escrow()
    assert manager.release_escrow_payment(escrow_id).success

    result = manager.refund_escrow_payment(escrow_id, "Item returned")

    assert result.success is True
    record = manager.get_escrow_payment_status(escrow_id)
    assert record.status == EscrowPaymentStatus.REFUNDED
    assert record.refund_reason == "Item returned"


def test_refund_pending_record_is_rejected(manager, gateway):
    created = _create(manager)

    result = manager.refund_escrow_payment(created.id)

    assert result.error == "Escrow payment cannot be refunded"
    assert result.error_code == "INVALID_STATE"
    assert gateway.calls_named("refund") == []


def test_refund_gateway_decline_keeps_status(manager, gateway, make_paid_escrow):
    escrow_id = make_paid_escrow()
    gateway.refund_response = GatewayResponse(status=False, message="Transaction has been fully reversed")

    result = manager.refund_escrow_payment(escrow_id)

    assert result.success is False
    assert result.error_code == "GATEWAY_ERROR"
    assert _status(manager, escrow_id) == EscrowPaymentStatus.PAID


def test_terminal_records_reject_every_transition(manager, gateway, make_paid_escrow):
    released = make_paid_escrow(order_id="order-released")
    assert manager.release_escrow_payment(released).success
    refunded = make_paid_escrow(order_id="order-refunded")
    assert manager.refund_escrow_payment(refunded).success
    failed = _create(manager, order_id="order-failed").id
    assert manager.cancel_escrow_payment(failed).success

    for escrow_id, status in (
        (released, EscrowPaymentStatus.RELEASED),
        (refunded, EscrowPaymentStatus.REFUNDED),
        (failed, EscrowPaymentStatus.FAILED),
    ):
        assert manager.process_escrow_payment(escrow_id, "buyer@example.com").error_code == "INVALID_STATE"
        assert manager.release_escrow_payment(escrow_id).error_code == "INVALID_STATE"
        if status != EscrowPaymentStatus.RELEASED:
            assert manager.refund_escrow_payment(escrow_id).error_code == "INVALID_STATE"
        assert _status(manager, escrow_id) == status
        assert status.is_terminal

    assert not EscrowPaymentStatus.PAID.is_terminal


def test_cancel_only_applies_to_pending(manager, make_paid_escrow):
    created = _create(manager)

    cancelled = manager.cancel_escrow_payment(created.id, "Customer abandoned checkout")

    assert cancelled.success is True
    assert cancelled.data.status == EscrowPaymentStatus.FAILED
    assert cancelled.data.failure_reason == "Customer abandoned checkout"
    assert manager.cancel_escrow_payment(created.id).error_code == "INVALID_STATE"
    assert manager.cancel_escrow_payment(make_paid_escrow(order_id="order-2")).error_code == "INVALID_STATE"
    assert manager.cancel_escrow_payment("missing-id").error_code == "NOT_FOUND"


def test_expire_pending_payments_after_hold_window(manager, gateway, clock):
    stale = _create(manager, order_id="order-stale")
    clock.advance(days=5)
    fresh = _create(manager, order_id="order-fresh")
    clock.advance(days=3)

    expired = manager.expire_pending_payments()

    assert expired == 1
    record = manager.get_escrow_payment_status(stale.id)
    assert record.status == EscrowPaymentStatus.FAILED
    assert record.failure_reason == "expired"
    assert _status(manager, fresh.id) == EscrowPaymentStatus.PENDING
    assert manager.expire_pending_payments() == 0


def test_verify_after_expiry_reports_invalid_state(manager, gateway, clock):
    created = _create(manager)
    clock.advance(days=8)
    manager.expire_pending_payments()
    gateway.mark_paid(created.gateway_reference, "45.99")

    result = manager.verify_payment(created.gateway_reference)

    assert result.success is False
    assert result.error_code == "INVALID_STATE"
    assert _status(manager, created.id) == EscrowPaymentStatus.FAILED


def test_auto_release_isolates_failures(manager, gateway, add_order, make_paid_escrow):
    first = make_paid_escrow(order_id="order-a")
    broken = make_paid_escrow(order_id="order-b", metadata={"merchantAccount": "RCP_broken"})
    third = make_paid_escrow(order_id="order-c")
    undelivered = make_paid_escrow(order_id="order-d")
    for order_id in ("order-a", "order-b", "order-c"):
        add_order(order_id, "delivered")
    add_order("order-d", "shipped")
    gateway.declined_recipients.add("RCP_broken")

    report = manager.auto_release_escrow_payments()

    assert sorted(report.released) == sorted([first, third])
    assert list(report.failed) == [broken]
    assert report.failed[broken] == "Recipient account is invalid"
    assert report.attempted == 3
    for escrow_id in (first, third):
        record = manager.get_escrow_payment_status(escrow_id)
        assert record.status == EscrowPaymentStatus.RELEASED
        assert record.release_reason == AUTO_RELEASE_REASON
    assert _status(manager, broken) == EscrowPaymentStatus.PAID
    assert _status(manager, undelivered) == EscrowPaymentStatus.PAID


def test_auto_release_never_raises(gateway, clock):
    class BrokenOrders:
        def get_orders_with_status(self, status):
            raise RuntimeError("order service down")

    manager = EscrowPaymentManager(get_sessionmaker(), gateway, BrokenOrders(), clock=clock)

    report = manager.auto_release_escrow_payments()

    assert report.released == []
    assert report.failed == {}


def test_payments_by_order_newest_first(manager, clock):
    first = _create(manager, order_id="order-42")
    clock.advance(minutes=5)
    second = _create(manager, order_id="order-42")
    _create(manager, order_id="order-other")

    records = manager.get_escrow_payments_by_order("order-42")

    assert [record.id for record in records] == [second.id, first.id]
    assert manager.get_escrow_payments_by_order("order-none") == []


def test_unknown_id_reads_as_none(manager):
    assert manager.get_escrow_payment_status("missing-id") is None


def test_payment_stats_match_per_status_sums(manager, make_paid_escrow):
    _create(manager, order_id="order-p", amount="10.00")
    make_paid_escrow(order_id="order-paid", amount="20.00")
    released = make_paid_escrow(order_id="order-r", amount="30.00")
    assert manager.release_escrow_payment(released).success
    refunded = make_paid_escrow(order_id="order-f", amount="40.00")
    assert manager.refund_escrow_payment(refunded).success
    failed = _create(manager, order_id="order-x", amount="5.50").id
    assert manager.cancel_escrow_payment(failed).success

    stats = manager.get_payment_stats()

    assert stats.total_escrow_payments == 5
    assert stats.pending_amount == Decimal("10.00")
    assert stats.paid_amount == Decimal("20.00")
    assert stats.released_amount == Decimal("30.00")
    assert stats.refunded_amount == Decimal("40.00")
    assert stats.failed_amount == Decimal("5.50")
    buckets = (
        stats.pending_amount,
        stats.paid_amount,
        stats.released_amount,
        stats.refunded_amount,
        stats.failed_amount,
    )
    assert sum(buckets) == Decimal("105.50")


def test_store_failure_surfaces_as_persistence_error(gateway, clock, tmp_path):
    broken_engine = create_engine(f"sqlite:///{tmp_path}/missing/escrow.db")
    factory = sessionmaker(bind=broken_engine)
    manager = EscrowPaymentManager(factory, gateway, SqlOrderStore(factory), clock=clock)

    created = manager.create_escrow_payment("order-1", "customer-1", "10.00", "GHS")
    assert created.success is False
    assert created.error_code == "PERSISTENCE_ERROR"

    assert manager.release_escrow_payment("any-id").error_code == "PERSISTENCE_ERROR"
    with pytest.raises(PersistenceError):
        manager.get_payment_stats()
    with pytest.raises(PersistenceError):
        manager.get_escrow_payment_status("any-id")
