# src/infrastructure/repositories/booking_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from src.infrastructure.db.models import Booking
from src.domain.state_machine import BookingStateMachine, BookingStatus, PaymentStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_order_id(
        self,
        order_id: str,
        user_id: str | None = None,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.gateway_order_id == order_id)
        if user_id is not None:
            stmt = stmt.where(Booking.user_id == user_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_user(self, user_id: str) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.user_id == user_id)
            .order_by(Booking.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_stale_pending(
        self,
        created_before: datetime,
        limit: int = 100,
    ) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.status == BookingStatus.PENDING)
            .where(Booking.payment_status == PaymentStatus.PENDING)
            .where(Booking.created_at < created_before)
            .order_by(Booking.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def add(self, booking: Booking) -> Booking:
        self.db.add(booking)
        return booking

    def transition_if_pending(
        self,
        booking_id: str,
        status: BookingStatus,
        payment_status: PaymentStatus,
        **values,
    ) -> bool:
        """
        Compare-and-set on (status, payment_status) == (pending, pending).

        Returns False when another caller already moved the booking on.
        """
        BookingStateMachine.validate_transition(BookingStatus.PENDING, status)
        if not BookingStateMachine.is_consistent(status, payment_status):
            raise ValueError(
                f"{status.value} booking cannot carry payment status {payment_status.value}"
            )

        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == BookingStatus.PENDING)
            .where(Booking.payment_status == PaymentStatus.PENDING)
            .values(status=status, payment_status=payment_status, **values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def set_gateway_order_id(self, booking_id: str, order_id: str) -> bool:
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.gateway_order_id.is_(None))
            .values(gateway_order_id=order_id)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def set_gateway_session_id(self, booking_id: str, session_id: str) -> bool:
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.gateway_session_id.is_(None))
            .values(gateway_session_id=session_id)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def set_gateway_payment_id(self, booking_id: str, payment_id: str) -> bool:
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == BookingStatus.CONFIRMED)
            .where(Booking.gateway_payment_id.is_(None))
            .values(gateway_payment_id=payment_id)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1
