# src/infrastructure/gateway/base.py

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol

from src.domain.requester import Requester


class OrderStatus(str, Enum):
    NOT_FOUND = "not_found"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentSession:
    order_id: str
    payment_session_id: str


@dataclass(frozen=True)
class OrderStatusResult:
    status: OrderStatus
    payment_id: Optional[str] = None
    raw_status: Optional[str] = None


@dataclass(frozen=True)
class WebhookNotification:
    order_id: Optional[str]
    succeeded: bool
    payment_id: Optional[str] = None
    event_type: Optional[str] = None


class PaymentGateway(Protocol):
    """The two gateway operations the booking flow depends on."""

    provider: str

    def build_order_id(self, booking_id: str) -> str:
        ...

    def create_order(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        customer: Requester,
        note: str,
    ) -> PaymentSession:
        ...

    def get_order_status(self, order_id: str) -> OrderStatusResult:
        ...
