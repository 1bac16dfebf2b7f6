"""Test configuration."""
import os
from collections.abc import AsyncIterator, Callable, Iterator
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete
from sqlalchemy.orm import Session

# --- Default environment, set before the application settings load
os.environ.setdefault("DATABASE_URL", "sqlite:///./escrowpay_test.db")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_escrowpay")
os.environ.setdefault("ESCROWPAY_ENV", "test")

from escrowpay import db  # noqa: E402
from escrowpay.config import EscrowConfig  # noqa: E402
from escrowpay.main import app  # noqa: E402
from escrowpay.models import Base, Order  # noqa: E402
from escrowpay.routers.escrow_payments import get_escrow_manager  # noqa: E402
from escrowpay.services.escrow_payments import EscrowPaymentManager  # noqa: E402
from escrowpay.services.orders import SqlOrderStore  # noqa: E402
from escrowpay.services.paystack import (  # noqa: E402
    GatewayResponse,
    to_minor_units,
)
from escrowpay.utils.errors import GatewayError  # noqa: E402
from escrowpay.utils.time import utcnow  # noqa: E402

ROOT = Path(__file__).resolve().parents[1]
DB_PATH = Path("./escrowpay_test.db")


def _run_migrations() -> None:
    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "alembic"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- (1) Fresh database file for the session
if DB_PATH.exists():
    DB_PATH.unlink()

# --- (2) Schema comes from Alembic only
_run_migrations()

engine = db.init_engine(os.environ["DATABASE_URL"])
TestingSessionLocal = db.get_sessionmaker()


class FrozenClock:
    """Manually advanced clock handed to the manager."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """In-memory stand-in for Paystack recording every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.transactions: dict[str, GatewayResponse] = {}
        self.transfer_statuses: dict[str, GatewayResponse] = {}
        self.refund_statuses: dict[str, GatewayResponse] = {}
        self.declined_recipients: set[str] = set()
        self.initialize_response: GatewayResponse | None = None
        self.initialize_error: GatewayError | None = None
        self.verify_error: GatewayError | None = None
        self.transfer_response: GatewayResponse | None = None
        self.transfer_error: GatewayError | None = None
        self.refund_response: GatewayResponse | None = None
        self.refund_error: GatewayError | None = None
        self.on_transfer: Callable[[], None] | None = None
        self.reject_duplicate_references = False
        self.seen_transfer_references: set[str] = set()

    def calls_named(self, name: str) -> list[dict[str, Any]]:
        return [kwargs for call, kwargs in self.calls if call == name]

    def mark_paid(self, reference: str, amount: Decimal | str, currency: str = "GHS") -> None:
        self.transactions[reference] = GatewayResponse(
            status=True,
            message="Verification successful",
            http_status=200,
            reference=reference,
            transaction_status="success",
            amount_minor=to_minor_units(Decimal(str(amount))),
            currency=currency,
        )

    def initialize_transaction(self, **kwargs: Any) -> GatewayResponse:
        self.calls.append(("initialize", kwargs))
        if self.initialize_error is not None:
            raise self.initialize_error
        if self.initialize_response is not None:
            return self.initialize_response
        reference = kwargs["reference"]
        return GatewayResponse(
            status=True,
            message="Authorization URL created",
            http_status=200,
            reference=reference,
            authorization_url=f"https://checkout.paystack.com/{reference}",
            access_code="access-code",
        )

    def verify_transaction(self, reference: str) -> GatewayResponse:
        self.calls.append(("verify", {"reference": reference}))
        if self.verify_error is not None:
            raise self.verify_error
        return self.transactions.get(
            reference,
            GatewayResponse(status=False, message="Transaction reference not found", http_status=400),
        )

    def transfer(self, **kwargs: Any) -> GatewayResponse:
        self.calls.append(("transfer", kwargs))
        reference = kwargs["reference"]
        if self.reject_duplicate_references and reference in self.seen_transfer_references:
            return GatewayResponse(status=False, message="Duplicate Transfer Reference", http_status=400)
        self.seen_transfer_references.add(reference)
        if self.on_transfer is not None:
            hook, self.on_transfer = self.on_transfer, None
            hook()
        if self.transfer_error is not None:
            raise self.transfer_error
        if kwargs["recipient"] in self.declined_recipients:
            return GatewayResponse(status=False, message="Recipient account is invalid", http_status=400)
        if self.transfer_response is not None:
            return self.transfer_response
        return GatewayResponse(
            status=True,
            message="Transfer has been queued",
            http_status=200,
            reference=kwargs["reference"],
            transaction_status="success",
            data={"transfer_code": "TRF_test"},
        )

    def verify_transfer(self, reference: str) -> GatewayResponse:
        self.calls.append(("verify_transfer", {"reference": reference}))
        return self.transfer_statuses.get(
            reference,
            GatewayResponse(status=False, message="Transfer not found", http_status=404),
        )

    def refund(self, **kwargs: Any) -> GatewayResponse:
        self.calls.append(("refund", kwargs))
        if self.refund_error is not None:
            raise self.refund_error
        if self.refund_response is not None:
            return self.refund_response
        return GatewayResponse(
            status=True,
            message="Refund has been queued for processing",
            http_status=200,
            data={"id": 3018284, "status": "pending"},
        )

    def verify_refund(self, transaction_reference: str) -> GatewayResponse:
        self.calls.append(("verify_refund", {"transaction_reference": transaction_reference}))
        return self.refund_statuses.get(
            transaction_reference,
            GatewayResponse(status=False, message="Refund not found", http_status=404),
        )


@pytest.fixture(autouse=True)
def clean_tables() -> Iterator[None]:
    with engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(delete(table))
    yield


@pytest.fixture
def db_session() -> Iterator[Session]:
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def manager(gateway: FakeGateway, clock: FrozenClock) -> EscrowPaymentManager:
    return EscrowPaymentManager(
        TestingSessionLocal,
        gateway,
        SqlOrderStore(TestingSessionLocal),
        EscrowConfig(),
        clock=clock,
    )


@pytest.fixture
def add_order(db_session: Session) -> Callable[[str, str], Order]:
    def _factory(order_id: str, status: str = "delivered") -> Order:
        order = Order(id=order_id, status=status)
        db_session.add(order)
        db_session.commit()
        return order

    return _factory


@pytest.fixture
def make_paid_escrow(manager: EscrowPaymentManager, gateway: FakeGateway) -> Callable[..., str]:
    """Create an escrow and drive it to ``paid`` through the gateway verification path."""

    def _factory(
        order_id: str = "order-1",
        amount: str = "45.99",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        created = manager.create_escrow_payment(order_id, "customer-1", Decimal(amount), "GHS", metadata)
        assert created.success, created.error
        record = created.data
        gateway.mark_paid(record.gateway_reference, amount)
        verified = manager.verify_payment(record.gateway_reference)
        assert verified.success, verified.error
        return record.id

    return _factory


@pytest.fixture
def override_manager(manager: EscrowPaymentManager) -> Iterator[EscrowPaymentManager]:
    app.dependency_overrides[get_escrow_manager] = lambda: manager
    yield manager
    app.dependency_overrides.pop(get_escrow_manager, None)


@pytest.fixture
async def client(override_manager: EscrowPaymentManager) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {os.environ['ADMIN_API_KEY']}"}


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
