import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="ticketing-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["CASHFREE_CLIENT_ID"] = "test-client-id"
os.environ["CASHFREE_CLIENT_SECRET"] = "test-client-secret"
os.environ["CASHFREE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["EVENT_TIMEZONE"] = "UTC"
os.environ["DB_CONNECT_MAX_RETRIES"] = "1"

from datetime import datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from src.application.booking_ledger import BookingLedger  # noqa: E402
from src.application.reconciliation import ReconciliationCoordinator  # noqa: E402
from src.config import get_app_settings  # noqa: E402
from src.domain.requester import Requester  # noqa: E402
from src.infrastructure.db.models import Base, Event  # noqa: E402
from src.infrastructure.db.session import SessionLocal, engine  # noqa: E402
from src.infrastructure.gateway.base import (  # noqa: E402
    OrderStatus,
    OrderStatusResult,
    PaymentSession,
)
from src.infrastructure.gateway.cashfree import compute_webhook_signature  # noqa: E402


WEBHOOK_SECRET = "whsec_test"


class FakeGateway:
    """In-memory stand-in for the Cashfree adapter."""

    provider = "CASHFREE"

    def __init__(self):
        self.orders: dict[str, OrderStatusResult] = {}
        self.created: list[dict] = []
        self.status_calls: list[str] = []
        self.create_error: Exception | None = None
        self.status_error: Exception | None = None

    def build_order_id(self, booking_id: str) -> str:
        return f"TEST_{booking_id.replace('-', '')}"

    def create_order(self, order_id, amount, currency, customer, note) -> PaymentSession:
        self.created.append(
            {
                "order_id": order_id,
                "amount": amount,
                "currency": currency,
                "customer": customer,
                "note": note,
            }
        )
        if self.create_error is not None:
            raise self.create_error
        self.orders[order_id] = OrderStatusResult(
            status=OrderStatus.AWAITING_PAYMENT,
            raw_status="ACTIVE",
        )
        return PaymentSession(order_id=order_id, payment_session_id=f"session_{order_id}")

    def get_order_status(self, order_id: str) -> OrderStatusResult:
        self.status_calls.append(order_id)
        if self.status_error is not None:
            raise self.status_error
        return self.orders.get(order_id, OrderStatusResult(status=OrderStatus.NOT_FOUND))

    def set_paid(self, order_id: str, payment_id: str = "cf_pay_1") -> None:
        self.orders[order_id] = OrderStatusResult(
            status=OrderStatus.PAID,
            payment_id=payment_id,
            raw_status="PAID",
        )

    def set_failed(self, order_id: str, raw_status: str = "EXPIRED") -> None:
        self.orders[order_id] = OrderStatusResult(
            status=OrderStatus.FAILED,
            raw_status=raw_status,
        )


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def requester() -> Requester:
    return Requester(
        user_id="user-1",
        name="Asha Rao",
        email="asha@example.com",
        phone="9876543210",
    )


@pytest.fixture
def make_event(db):
    def _make_event(
        price: str = "500",
        capacity: int | None = 10,
        starts_in: timedelta = timedelta(days=2),
        **overrides,
    ) -> Event:
        start = datetime.now(timezone.utc) + starts_in
        values = {
            "title": "Indie Night",
            "price": Decimal(price),
            "currency": "INR",
            "capacity": capacity,
            "booked_count": 0,
            "is_active": True,
            "start_date": start.date(),
            "start_time": start.strftime("%H:%M"),
        }
        values.update(overrides)
        event = Event(**values)
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    return _make_event


@pytest.fixture
def booked_count(db):
    def _booked_count(event_id: str) -> int:
        db.expire_all()
        return db.get(Event, event_id).booked_count

    return _booked_count


@pytest.fixture
def ledger(db) -> BookingLedger:
    return BookingLedger(db, settings=get_app_settings())


@pytest.fixture
def coordinator(ledger, gateway) -> ReconciliationCoordinator:
    return ReconciliationCoordinator(ledger, gateway, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def sign():
    def _sign(body: bytes, timestamp: str = "1760000000") -> dict:
        return {
            "x-webhook-signature": compute_webhook_signature(WEBHOOK_SECRET, body, timestamp),
            "x-webhook-timestamp": timestamp,
            "content-type": "application/json",
        }

    return _sign


@pytest.fixture
def client(gateway):
    from src.api.routes.routes import get_gateway
    from src.main import app

    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
