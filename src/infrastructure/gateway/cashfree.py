# src/infrastructure/gateway/cashfree.py

"""
Cashfree PG adapter (REST API version 2023-08-01).

Amounts go over the wire in the currency's natural unit: Cashfree takes
``order_amount`` in rupees for INR, not paise. Do not convert to minor
units here.
"""

import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx

from src.config import GatewaySettings
from src.domain.exceptions import (
    GatewayRejectedError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    InvalidWebhookPayloadError,
)
from src.domain.requester import Requester
from src.infrastructure.gateway.base import (
    OrderStatus,
    OrderStatusResult,
    PaymentSession,
    WebhookNotification,
)

logger = logging.getLogger(__name__)

_ORDER_STATUSES = {
    "PAID": OrderStatus.PAID,
    "ACTIVE": OrderStatus.AWAITING_PAYMENT,
    "TERMINATION_REQUESTED": OrderStatus.AWAITING_PAYMENT,
    "EXPIRED": OrderStatus.FAILED,
    "TERMINATED": OrderStatus.FAILED,
}


class CashfreeGateway:

    provider = "CASHFREE"

    def __init__(
        self,
        settings: GatewaySettings,
        order_ttl: timedelta | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        settings.validate()
        self.settings = settings
        self.order_ttl = order_ttl
        self._client = httpx.Client(
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            transport=transport,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "x-client-id": settings.client_id,
                "x-client-secret": settings.client_secret,
                "x-api-version": settings.api_version,
            },
        )

    def close(self) -> None:
        self._client.close()

    def build_order_id(self, booking_id: str) -> str:
        # Cashfree order ids: <= 45 chars of [A-Za-z0-9_-].
        return f"{self.settings.order_id_prefix}_{booking_id.replace('-', '')}"

    def create_order(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        customer: Requester,
        note: str,
    ) -> PaymentSession:
        payload = {
            "order_id": order_id,
            "order_amount": float(amount),
            "order_currency": currency,
            "order_note": note,
            "customer_details": {
                "customer_id": customer.user_id,
                "customer_email": customer.email or "customer@example.com",
                "customer_phone": customer.phone or "9999999999",
                "customer_name": customer.name or "Customer",
            },
            "order_meta": {
                "return_url": f"{self.settings.client_url}/payment/callback?order_id={order_id}",
                "notify_url": f"{self.settings.server_url}/api/payments/webhook",
            },
        }
        if self.order_ttl is not None:
            expires_at = datetime.now(timezone.utc) + self.order_ttl
            payload["order_expiry_time"] = expires_at.isoformat(timespec="seconds")

        logger.info(
            "Creating Cashfree order order_id=%s amount=%s currency=%s environment=%s",
            order_id,
            amount,
            currency,
            self.settings.environment,
        )
        response = self._request("POST", "/orders", json=payload)
        if response.status_code >= 400:
            raise GatewayRejectedError(
                self._error_message(response),
                status_code=response.status_code,
            )

        body = self._json(response)
        payment_session_id = body.get("payment_session_id")
        if not payment_session_id:
            raise GatewayRejectedError(
                "Cashfree did not return a payment_session_id",
                status_code=response.status_code,
            )
        return PaymentSession(
            order_id=body.get("order_id") or order_id,
            payment_session_id=payment_session_id,
        )

    def get_order_status(self, order_id: str) -> OrderStatusResult:
        response = self._request("GET", f"/orders/{order_id}")
        if response.status_code == 404:
            return OrderStatusResult(status=OrderStatus.NOT_FOUND)
        if response.status_code >= 400:
            raise GatewayRejectedError(
                self._error_message(response),
                status_code=response.status_code,
            )

        raw_status = self._json(response).get("order_status")
        status = _ORDER_STATUSES.get(raw_status)
        if status is None:
            logger.warning(
                "Unknown Cashfree order_status=%s for order_id=%s; treating as awaiting payment",
                raw_status,
                order_id,
            )
            status = OrderStatus.AWAITING_PAYMENT

        payment_id = None
        if status is OrderStatus.PAID:
            payment_id = self._successful_payment_id(order_id)
        return OrderStatusResult(status=status, payment_id=payment_id, raw_status=raw_status)

    def _successful_payment_id(self, order_id: str) -> str | None:
        response = self._request("GET", f"/orders/{order_id}/payments")
        if response.status_code >= 400:
            logger.warning(
                "Could not list payments for paid order_id=%s (HTTP %s)",
                order_id,
                response.status_code,
            )
            return None

        payments = self._json(response)
        if not isinstance(payments, list):
            return None
        for payment in payments:
            if payment.get("payment_status") == "SUCCESS" and payment.get("cf_payment_id"):
                return str(payment["cf_payment_id"])
        return None

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayTimeoutError(
                f"Cashfree {method} {path} timed out after {self.settings.timeout_seconds}s"
            ) from exc
        except httpx.TransportError as exc:
            raise GatewayUnavailableError(f"Cashfree {method} {path} failed: {exc}") from exc

    @staticmethod
    def _json(response: httpx.Response):
        try:
            return response.json()
        except ValueError as exc:
            raise GatewayRejectedError(
                f"Cashfree returned a non-JSON response: {response.text[:200]}",
                status_code=response.status_code,
            ) from exc

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"Cashfree API error: {response.status_code}"
        message = body.get("message") if isinstance(body, dict) else None
        return message or f"Cashfree API error: {response.status_code}"


def compute_webhook_signature(
    secret: str,
    raw_body: bytes,
    timestamp: str | None = None,
) -> str:
    """base64(HMAC-SHA256(secret, timestamp + raw body))"""
    message = (timestamp or "").encode("utf-8") + raw_body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook_signature(
    secret: str,
    raw_body: bytes,
    signature: str | None,
    timestamp: str | None = None,
) -> bool:
    if not signature:
        return False
    expected = compute_webhook_signature(secret, raw_body, timestamp)
    return hmac.compare_digest(expected, signature.strip())


def _nested_order_id(data: dict):
    order = data.get("order")
    if isinstance(order, dict) and order.get("order_id"):
        return order["order_id"]
    # refund, settlement and dispute events carry it on their own object
    for value in data.values():
        if isinstance(value, dict) and value.get("order_id"):
            return value["order_id"]
    return None


def parse_webhook_payload(raw_body: bytes) -> WebhookNotification:
    """
    Accepts the nested 2023-08-01 payload (data.order / data.payment)
    and the older flat one (orderId / orderStatus / paymentStatus).

    Only a body that is not JSON at all is rejected. Anything else comes
    back as a notification; one without an order id has order_id None.
    """
    try:
        payload = json.loads(raw_body)
    except ValueError as exc:
        raise InvalidWebhookPayloadError("Webhook body is not valid JSON") from exc

    if not isinstance(payload, dict):
        return WebhookNotification(order_id=None, succeeded=False)

    event_type = payload.get("type")
    data = payload.get("data")
    if isinstance(data, dict):
        payment = data.get("payment")
        if not isinstance(payment, dict):
            payment = {}
        order_id = _nested_order_id(data)
        succeeded = payment.get("payment_status") == "SUCCESS"
        payment_id = payment.get("cf_payment_id")
    else:
        order_id = payload.get("orderId")
        succeeded = (
            payload.get("orderStatus") == "PAID"
            and payload.get("paymentStatus") == "SUCCESS"
        )
        payment_id = payload.get("paymentId")

    if not isinstance(order_id, str) or not order_id:
        return WebhookNotification(
            order_id=None,
            succeeded=False,
            event_type=event_type if isinstance(event_type, str) else None,
        )

    return WebhookNotification(
        order_id=order_id,
        succeeded=succeeded,
        payment_id=str(payment_id) if payment_id is not None else None,
        event_type=event_type if isinstance(event_type, str) else None,
    )
