# src/infrastructure/db/models.py

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    Date,
    DateTime,
    Enum,
    Numeric,
    UniqueConstraint,
    CheckConstraint,
    ForeignKey,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

from src.infrastructure.db.session import Base
from src.domain.state_machine import BookingStatus, PaymentMethod, PaymentStatus


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Event(Base):
    """
    Ticketed event as seen by the booking engine.
    Only booked_count is written here; the catalog owns the rest.
    """

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal("0"),
    )
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR")
    capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    booked_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    start_time: Mapped[str | None] = mapped_column(String(16), nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_time: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_event_price_nonnegative"),
        CheckConstraint("booked_count >= 0", name="ck_event_booked_nonnegative"),
        CheckConstraint(
            "capacity IS NULL OR booked_count <= capacity",
            name="ck_event_booked_lte_capacity",
        ),
    )


class Booking(Base):
    """
    Booking table reflecting domain state.
    Domain controls transitions.
    DB stores current state safely.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    event_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("events.id"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tickets: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR")
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status", values_callable=_enum_values),
        nullable=False,
        default=BookingStatus.PENDING,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status", values_callable=_enum_values),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod, name="payment_method", values_callable=_enum_values),
        nullable=False,
    )
    gateway_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gateway_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    booking_reference: Mapped[str] = mapped_column(String(64), nullable=False)
    attendee_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    attendee_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    attendee_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("booking_reference", name="uq_booking_reference"),
        UniqueConstraint("gateway_order_id", name="uq_booking_gateway_order_id"),
        CheckConstraint("tickets > 0", name="ck_booking_tickets_positive"),
        CheckConstraint("total_amount >= 0", name="ck_booking_amount_nonnegative"),
        Index("ix_bookings_user_event", "user_id", "event_id"),
        Index("ix_bookings_status", "status"),
    )


class PaymentWebhookEvent(Base):
    """Audit row for every authenticated, well-formed gateway notification."""

    __tablename__ = "payment_webhook_events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    booking_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    event_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_webhook_events_order_id", "order_id"),
    )
