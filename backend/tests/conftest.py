# backend/tests/conftest.py
"""
Pytest configuration for SlotPay.

Every test gets a fresh in-memory SQLite ledger, an in-memory payment
gateway and a frozen clock. The clock sits in 2030 so that rows stamped by
the database's own ``now()`` are always in the past.
"""

import os

# Set test configuration BEFORE any slotpay imports
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["GATEWAY_KEY_ID"] = "rzp_test_key"
os.environ["GATEWAY_KEY_SECRET"] = "test-key-secret"
os.environ["GATEWAY_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["GATEWAY_FAKE"] = "true"
os.environ["SLOT_CLAIM_REDIS_ENABLED"] = "false"

from datetime import datetime
from decimal import Decimal
import itertools
from typing import Any, Callable, Iterator, Tuple

from fastapi.testclient import TestClient
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from slotpay.api.dependencies import get_clock, get_db, get_payment_gateway
from slotpay.database import init_db
from slotpay.integrations.payment_gateway_client import FakePaymentGatewayClient
from slotpay.main import app
from slotpay.models.provider import Provider, Service
from slotpay.services.booking_ledger import BookingLedger
from slotpay.services.order_issuer import IssuedOrder, OrderIssuer
from slotpay.services.payment_verifier import PaymentVerifier, VerificationResult
from slotpay.services.refund_coordinator import RefundCoordinator

from tests.helpers import CUSTOMER, IST, KEY_SECRET, NOW, FrozenClock, sign_payment


def _enable_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@pytest.fixture
def engine() -> Iterator[Engine]:
    # One shared connection so route handlers running in worker threads see the same data.
    test_engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _enable_foreign_keys(test_engine)
    init_db(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def db(engine: Engine) -> Iterator[Session]:
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def gateway() -> FakePaymentGatewayClient:
    return FakePaymentGatewayClient(key_id="rzp_test_key")


@pytest.fixture
def provider(db: Session) -> Provider:
    provider = Provider(
        display_name="Dr. Rao Physiotherapy",
        utc_offset_minutes=IST,
        recurring_schedule=[
            {"day_of_week": 1, "slots": [{"start": "09:00", "end": "17:00"}]},
            {"day_of_week": 2, "slots": [{"start": "09:00", "end": "12:00"}]},
        ],
        schedule_exceptions=[],
        buffer_minutes=0,
        advance_booking_days=30,
        min_notice_hours=0,
        is_active=True,
    )
    db.add(provider)
    db.commit()
    return provider


@pytest.fixture
def service(db: Session, provider: Provider) -> Service:
    service = Service(
        provider_id=provider.id,
        name="Initial consultation",
        price=Decimal("500.00"),
        currency="INR",
        duration_minutes=60,
        is_active=True,
    )
    db.add(service)
    db.commit()
    return service


@pytest.fixture
def order_issuer(db: Session, gateway: FakePaymentGatewayClient, clock: FrozenClock) -> OrderIssuer:
    return OrderIssuer(db, gateway, now_fn=clock)


@pytest.fixture
def verifier(db: Session, clock: FrozenClock) -> PaymentVerifier:
    return PaymentVerifier(db, key_secret=KEY_SECRET, now_fn=clock)


@pytest.fixture
def ledger(db: Session, gateway: FakePaymentGatewayClient, clock: FrozenClock) -> BookingLedger:
    return BookingLedger(db, gateway, now_fn=clock)


@pytest.fixture
def refunds(db: Session, gateway: FakePaymentGatewayClient, clock: FrozenClock) -> RefundCoordinator:
    return RefundCoordinator(db, gateway, now_fn=clock)


@pytest.fixture
def gateway_payment_ids() -> Iterator[str]:
    return (f"pay_test{n:04d}" for n in itertools.count(1))


@pytest.fixture
def book(
    order_issuer: OrderIssuer,
    verifier: PaymentVerifier,
    service: Service,
    gateway_payment_ids: Iterator[str],
) -> Callable[..., Tuple[IssuedOrder, VerificationResult]]:
    """Issue an order and verify its payment: the happy path to a confirmed booking."""

    def _book(start_at: datetime, customer_id: str = CUSTOMER) -> Tuple[IssuedOrder, VerificationResult]:
        order = order_issuer.issue_order(customer_id, service.provider_id, service.id, start_at)
        gateway_payment_id = next(gateway_payment_ids)
        result = verifier.verify_payment(
            {
                "order_id": order.gateway_order_id,
                "payment_id": gateway_payment_id,
                "signature": sign_payment(order.gateway_order_id, gateway_payment_id),
            }
        )
        return order, result

    return _book


@pytest.fixture
def client(db: Session, gateway: FakePaymentGatewayClient, clock: FrozenClock) -> Iterator[TestClient]:
    """API client wired to the test session, the fake gateway and the frozen clock."""

    def _get_db() -> Iterator[Session]:
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_clock] = lambda: clock
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
