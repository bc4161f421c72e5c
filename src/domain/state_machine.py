# src/domain/state_machine.py

from enum import Enum
from typing import Dict, Set

from src.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    FREE = "free"
    CASHFREE = "cashfree"


class BookingStateMachine:
    """
    Central lifecycle controller for booking transitions.
    Defines the legal state transitions.
    """

    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        BookingStatus.PENDING: {
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.CONFIRMED: set(),
        BookingStatus.CANCELLED: set(),
    }

    # Payment status each booking status may be paired with.
    _PAYMENT_STATUSES: Dict[BookingStatus, Set[PaymentStatus]] = {
        BookingStatus.PENDING: {PaymentStatus.PENDING},
        BookingStatus.CONFIRMED: {PaymentStatus.PAID, PaymentStatus.REFUNDED},
        BookingStatus.CANCELLED: {
            PaymentStatus.PENDING,
            PaymentStatus.FAILED,
            PaymentStatus.REFUNDED,
        },
    }

    @classmethod
    def can_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status: BookingStatus) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def is_consistent(
        cls,
        status: BookingStatus,
        payment_status: PaymentStatus,
    ) -> bool:
        """paid implies confirmed; pending bookings carry no payment outcome."""
        cls._ensure_valid_status(status)
        return payment_status in cls._PAYMENT_STATUSES[status]

    @staticmethod
    def _ensure_valid_status(status: BookingStatus) -> None:
        if not isinstance(status, BookingStatus):
            raise TypeError(
                f"Expected BookingStatus, got {type(status)}"
            )
