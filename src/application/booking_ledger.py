import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Callable
from uuid import uuid4

from sqlalchemy.orm import Session

from src.config import AppSettings, get_app_settings
from src.domain.exceptions import (
    BookingClosedError,
    BookingNotFoundError,
    CapacityExceededError,
    EventNotFoundError,
    InvalidStateTransitionError,
)
from src.domain.requester import Requester
from src.domain.state_machine import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
)
from src.domain.time_window import is_booking_allowed
from src.infrastructure.db.models import Booking, Event
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.event_repository import EventRepository

logger = logging.getLogger(__name__)


def generate_booking_reference(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BookingLedger:
    """
    Owns booking rows and the booked_count counter on events.

    Every state-changing method commits its own short transaction, so
    callers can talk to the payment gateway between ledger calls without
    holding row locks.
    """

    def __init__(
        self,
        db: Session,
        settings: AppSettings | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.db = db
        self.settings = settings or get_app_settings()
        self.clock = clock
        self.booking_repository = BookingRepository(db)
        self.event_repository = EventRepository(db)

    # ----------------------------- reads

    def get_event(self, event_id: str) -> Event:
        event = self.event_repository.get_by_id(event_id)
        if not event or not event.is_active:
            raise EventNotFoundError(event_id)
        return event

    def get(self, booking_id: str, user_id: str | None = None) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking or (user_id is not None and booking.user_id != user_id):
            raise BookingNotFoundError(booking_id)
        return booking

    def get_by_order_id(self, order_id: str, user_id: str | None = None) -> Booking:
        booking = self.booking_repository.get_by_order_id(order_id, user_id)
        if not booking:
            raise BookingNotFoundError(order_id)
        return booking

    def find_by_order_id(self, order_id: str) -> Booking | None:
        return self.booking_repository.get_by_order_id(order_id)

    def list_for_requester(self, user_id: str) -> list[Booking]:
        return self.booking_repository.list_for_user(user_id)

    def list_stale_pending(self, created_before: datetime, limit: int = 100) -> list[Booking]:
        return self.booking_repository.list_stale_pending(created_before, limit)

    # ----------------------------- writes

    def reserve(self, event_id: str, requester: Requester, tickets: int) -> Booking:
        if tickets < 1:
            raise ValueError("At least 1 ticket is required")

        event = self.get_event(event_id)
        window = is_booking_allowed(event, now=self.clock(), tz=self.settings.tz)
        if not window.allowed:
            raise BookingClosedError(window.reason)

        total_amount = event.price * tickets
        is_free = total_amount == 0
        booking = Booking(
            id=str(uuid4()),
            event_id=event.id,
            user_id=requester.user_id,
            tickets=tickets,
            total_amount=total_amount,
            currency=event.currency,
            status=BookingStatus.CONFIRMED if is_free else BookingStatus.PENDING,
            payment_status=PaymentStatus.PAID if is_free else PaymentStatus.PENDING,
            payment_method=PaymentMethod.FREE if is_free else PaymentMethod.CASHFREE,
            booking_reference=generate_booking_reference(
                self.settings.booking_reference_prefix
            ),
            attendee_name=requester.name,
            attendee_email=requester.email,
            attendee_phone=requester.phone,
        )

        try:
            if not self.event_repository.try_reserve(event.id, tickets):
                raise CapacityExceededError("Not enough tickets available")
            self.booking_repository.add(booking)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Reserved booking_id=%s event_id=%s tickets=%s status=%s",
            booking.id,
            event_id,
            tickets,
            booking.status.value,
        )
        return booking

    def mark_paid(self, booking_id: str, gateway_payment_id: str | None) -> Booking:
        booking, _ = self.confirm_payment(booking_id, gateway_payment_id)
        return booking

    def confirm_payment(
        self,
        booking_id: str,
        gateway_payment_id: str | None,
    ) -> tuple[Booking, bool]:
        """
        pending/pending -> confirmed/paid, at most once.

        Returns the booking and whether this call applied the transition.
        booked_count is not touched: it was reserved in reserve().
        """
        booking = self.get(booking_id)

        try:
            applied = self.booking_repository.transition_if_pending(
                booking_id,
                BookingStatus.CONFIRMED,
                PaymentStatus.PAID,
                gateway_payment_id=gateway_payment_id,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(booking)

        if applied:
            logger.info(
                "Booking confirmed booking_id=%s payment_id=%s",
                booking_id,
                gateway_payment_id,
            )
            return booking, True

        if booking.status == BookingStatus.CONFIRMED and booking.payment_status == PaymentStatus.PAID:
            if gateway_payment_id and booking.gateway_payment_id is None:
                self._backfill_payment_id(booking, gateway_payment_id)
            logger.info("Duplicate payment confirmation ignored booking_id=%s", booking_id)
            return booking, False

        raise InvalidStateTransitionError(
            from_state=f"{booking.status.value}/{booking.payment_status.value}",
            to_state=f"{BookingStatus.CONFIRMED.value}/{PaymentStatus.PAID.value}",
        )

    def _backfill_payment_id(self, booking: Booking, gateway_payment_id: str) -> None:
        # An earlier confirmation may have arrived without the gateway payment id.
        try:
            recorded = self.booking_repository.set_gateway_payment_id(
                booking.id, gateway_payment_id
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(booking)
        if recorded:
            logger.info(
                "Recorded late payment_id=%s for booking_id=%s",
                gateway_payment_id,
                booking.id,
            )

    def mark_failed(self, booking_id: str, reason: str) -> Booking:
        """
        pending -> cancelled/failed and release the reserved tickets.

        A confirmed booking is never reverted by a later failure report.
        """
        booking = self.get(booking_id)
        event_id, tickets = booking.event_id, booking.tickets

        try:
            applied = self.booking_repository.transition_if_pending(
                booking_id,
                BookingStatus.CANCELLED,
                PaymentStatus.FAILED,
            )
            if applied and not self.event_repository.release(event_id, tickets):
                logger.error(
                    "booked_count for event_id=%s is lower than released tickets=%s",
                    event_id,
                    tickets,
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(booking)

        if applied:
            logger.warning(
                "Booking cancelled booking_id=%s released_tickets=%s reason=%s",
                booking_id,
                tickets,
                reason,
            )
        elif booking.status == BookingStatus.CONFIRMED:
            logger.warning(
                "Failure report ignored for confirmed booking_id=%s reason=%s",
                booking_id,
                reason,
            )
        return booking

    def record_gateway_order(self, booking_id: str, order_id: str) -> Booking:
        booking = self.get(booking_id)
        try:
            recorded = self.booking_repository.set_gateway_order_id(booking_id, order_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(booking)
        if not recorded and booking.gateway_order_id != order_id:
            logger.warning(
                "booking_id=%s already has gateway order %s; kept it",
                booking_id,
                booking.gateway_order_id,
            )
        return booking

    def record_gateway_session(self, booking_id: str, session_id: str) -> Booking:
        booking = self.get(booking_id)
        try:
            self.booking_repository.set_gateway_session_id(booking_id, session_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(booking)
        return booking
