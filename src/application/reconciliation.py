import hashlib
import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from src.application.booking_ledger import BookingLedger
from src.domain.exceptions import (
    GatewayError,
    GatewayTimeoutError,
    InvalidSignatureError,
    InvalidStateTransitionError,
)
from src.domain.requester import Requester
from src.domain.state_machine import BookingStateMachine, BookingStatus, PaymentMethod
from src.infrastructure.db.models import Booking
from src.infrastructure.gateway.base import OrderStatus, OrderStatusResult, PaymentGateway
from src.infrastructure.gateway.cashfree import parse_webhook_payload, verify_webhook_signature
from src.infrastructure.repositories.webhook_event_repository import WebhookEventRepository

logger = logging.getLogger(__name__)


class WebhookOutcome(str, Enum):
    PROCESSED = "PROCESSED"
    DUPLICATE = "DUPLICATE"
    IGNORED = "IGNORED"
    UNKNOWN_ORDER = "UNKNOWN_ORDER"
    CONFLICT = "CONFLICT"


@dataclass
class SessionResult:
    booking: Booking
    is_free: bool
    order_id: str | None = None
    payment_session_id: str | None = None


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    order_id: str | None = None
    booking_id: str | None = None


@dataclass
class ReclaimReport:
    confirmed: int = 0
    cancelled: int = 0
    still_pending: int = 0
    skipped: int = 0


class ReconciliationCoordinator:
    """
    Drives a booking to its payment outcome from two independent signals:
    the caller's verification poll and the gateway's webhook.

    Holds no locks. Both paths end in BookingLedger.mark_paid, whose
    conditional update makes duplicate and reordered signals harmless.
    """

    def __init__(
        self,
        ledger: BookingLedger,
        gateway: PaymentGateway,
        webhook_secret: str | None = None,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.webhook_secret = webhook_secret
        self.webhook_events = WebhookEventRepository(ledger.db)

    def create_session(
        self,
        event_id: str,
        requester: Requester,
        tickets: int,
    ) -> SessionResult:
        booking = self.ledger.reserve(event_id, requester, tickets)
        if booking.payment_method == PaymentMethod.FREE:
            return SessionResult(booking=booking, is_free=True)

        # Recorded before the gateway call so poll and webhook can find the
        # booking even if the call below times out.
        order_id = self.gateway.build_order_id(booking.id)
        booking = self.ledger.record_gateway_order(booking.id, order_id)

        try:
            session = self.gateway.create_order(
                order_id=order_id,
                amount=booking.total_amount,
                currency=booking.currency,
                customer=requester,
                note=f"Booking {booking.booking_reference} - {tickets} ticket(s)",
            )
        except GatewayTimeoutError as exc:
            logger.warning(
                "Order creation timed out; booking_id=%s order_id=%s stays pending",
                booking.id,
                order_id,
            )
            raise GatewayTimeoutError(
                f"Payment gateway timed out. Booking {booking.id} is pending; "
                f"verify order {order_id} later.",
                booking_id=booking.id,
                order_id=order_id,
            ) from exc
        except GatewayError as exc:
            logger.error(
                "Order creation failed for booking_id=%s order_id=%s: %s",
                booking.id,
                order_id,
                exc,
            )
            self.ledger.mark_failed(booking.id, reason=f"order creation failed: {exc}")
            raise

        booking = self.ledger.record_gateway_session(booking.id, session.payment_session_id)
        return SessionResult(
            booking=booking,
            is_free=False,
            order_id=order_id,
            payment_session_id=session.payment_session_id,
        )

    def verify(self, order_id: str, user_id: str | None = None) -> Booking:
        booking = self.ledger.get_by_order_id(order_id, user_id)
        if BookingStateMachine.is_terminal(booking.status):
            return booking

        result = self.gateway.get_order_status(order_id)
        return self._apply_status(booking, result)

    def handle_webhook(
        self,
        raw_body: bytes,
        signature: str | None,
        timestamp: str | None = None,
    ) -> WebhookResult:
        if self.webhook_secret:
            if not verify_webhook_signature(self.webhook_secret, raw_body, signature, timestamp):
                logger.warning("Rejected webhook with invalid signature")
                raise InvalidSignatureError("Invalid webhook signature")
        else:
            logger.warning("Webhook secret not configured; accepting unsigned notification")

        notification = parse_webhook_payload(raw_body)
        payload_hash = hashlib.sha256(raw_body).hexdigest()
        booking = None
        if notification.order_id is not None:
            booking = self.ledger.find_by_order_id(notification.order_id)
        booking_id = booking.id if booking else None

        if notification.order_id is None:
            outcome = WebhookOutcome.IGNORED
            logger.info(
                "Webhook without an order id acknowledged (type=%s)",
                notification.event_type,
            )
        elif booking is None:
            outcome = WebhookOutcome.UNKNOWN_ORDER
            logger.warning(
                "Webhook for unknown order_id=%s acknowledged (type=%s)",
                notification.order_id,
                notification.event_type,
            )
        elif not notification.succeeded:
            outcome = WebhookOutcome.IGNORED
            logger.info(
                "Non-success webhook for order_id=%s (type=%s); left to verification",
                notification.order_id,
                notification.event_type,
            )
        else:
            try:
                _, applied = self.ledger.confirm_payment(booking_id, notification.payment_id)
                outcome = WebhookOutcome.PROCESSED if applied else WebhookOutcome.DUPLICATE
            except InvalidStateTransitionError:
                outcome = WebhookOutcome.CONFLICT
                logger.error(
                    "Payment success reported for non-pending booking_id=%s order_id=%s; "
                    "needs manual refund",
                    booking_id,
                    notification.order_id,
                )

        self.webhook_events.record(
            provider=self.gateway.provider,
            order_id=notification.order_id,
            booking_id=booking_id,
            event_type=notification.event_type,
            payload_hash=payload_hash,
            outcome=outcome.value,
        )
        self.ledger.db.commit()
        return WebhookResult(outcome=outcome, order_id=notification.order_id, booking_id=booking_id)

    def reclaim_abandoned(
        self,
        older_than: timedelta | None = None,
        limit: int = 100,
    ) -> ReclaimReport:
        """
        Settle pending bookings older than the hold TTL.

        The gateway is asked first, so a payment that completed without any
        signal reaching us is confirmed rather than cancelled.
        """
        ttl = older_than or timedelta(minutes=self.ledger.settings.pending_booking_ttl_minutes)
        cutoff = self.ledger.clock() - ttl
        stale = [
            (booking.id, booking.gateway_order_id)
            for booking in self.ledger.list_stale_pending(cutoff, limit)
        ]

        report = ReclaimReport()
        for booking_id, order_id in stale:
            if not order_id:
                self.ledger.mark_failed(booking_id, reason="abandoned before order creation")
                report.cancelled += 1
                continue

            try:
                result = self.gateway.get_order_status(order_id)
            except GatewayError as exc:
                logger.warning("Skipping reclaim of booking_id=%s: %s", booking_id, exc)
                report.skipped += 1
                continue

            if result.status is OrderStatus.NOT_FOUND:
                result = OrderStatusResult(status=OrderStatus.FAILED, raw_status="NOT_FOUND")
            booking = self._apply_status(self.ledger.get(booking_id), result)

            if booking.status == BookingStatus.CONFIRMED:
                report.confirmed += 1
            elif booking.status == BookingStatus.CANCELLED:
                report.cancelled += 1
            else:
                report.still_pending += 1

        logger.info(
            "Reclaim finished confirmed=%s cancelled=%s still_pending=%s skipped=%s",
            report.confirmed,
            report.cancelled,
            report.still_pending,
            report.skipped,
        )
        return report

    def _apply_status(self, booking: Booking, result: OrderStatusResult) -> Booking:
        if result.status is OrderStatus.PAID:
            return self.ledger.mark_paid(booking.id, result.payment_id)
        if result.status is OrderStatus.FAILED:
            return self.ledger.mark_failed(
                booking.id,
                reason=f"gateway reported {result.raw_status or 'failure'}",
            )
        if result.status is OrderStatus.NOT_FOUND:
            logger.warning(
                "Gateway has no order %s for pending booking_id=%s",
                booking.gateway_order_id,
                booking.id,
            )
        return booking
