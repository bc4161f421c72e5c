import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from src.application.booking_ledger import BookingLedger
from src.config import get_app_settings
from src.domain.exceptions import (
    BookingClosedError,
    BookingNotFoundError,
    CapacityExceededError,
    EventNotFoundError,
    InvalidStateTransitionError,
)
from src.domain.requester import Requester
from src.domain.state_machine import BookingStatus, PaymentMethod, PaymentStatus
from src.infrastructure.db.models import Event
from src.infrastructure.db.session import SessionLocal


# ---------------------
# RESERVE
# ---------------------

def test_paid_reservation_holds_tickets(ledger, requester, make_event, booked_count):
    event = make_event(price="750", capacity=10)

    booking = ledger.reserve(event.id, requester, tickets=3)

    assert booking.status == BookingStatus.PENDING
    assert booking.payment_status == PaymentStatus.PENDING
    assert booking.payment_method == PaymentMethod.CASHFREE
    assert booking.total_amount == Decimal("2250")
    assert booking.booking_reference.startswith("TKT-")
    assert booking.attendee_email == requester.email
    assert booked_count(event.id) == 3


def test_free_reservation_is_confirmed_immediately(ledger, requester, make_event, booked_count):
    event = make_event(price="0", capacity=None)

    booking = ledger.reserve(event.id, requester, tickets=2)

    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_status == PaymentStatus.PAID
    assert booking.payment_method == PaymentMethod.FREE
    assert booking.gateway_order_id is None
    assert booked_count(event.id) == 2


def test_capacity_exceeded_leaves_no_trace(ledger, requester, make_event, booked_count):
    event = make_event(capacity=2)

    with pytest.raises(CapacityExceededError):
        ledger.reserve(event.id, requester, tickets=3)

    assert booked_count(event.id) == 0
    assert ledger.list_for_requester(requester.user_id) == []


def test_last_seats_can_be_taken(ledger, requester, make_event, booked_count):
    event = make_event(capacity=4)

    ledger.reserve(event.id, requester, tickets=3)
    ledger.reserve(event.id, requester, tickets=1)

    with pytest.raises(CapacityExceededError):
        ledger.reserve(event.id, requester, tickets=1)
    assert booked_count(event.id) == 4


def test_closed_window_refuses_booking(ledger, requester, make_event):
    event = make_event(starts_in=timedelta(minutes=20))

    with pytest.raises(BookingClosedError) as exc_info:
        ledger.reserve(event.id, requester, tickets=1)

    assert "less than 30 minutes" in exc_info.value.reason


def test_unknown_or_inactive_event(ledger, requester, make_event):
    with pytest.raises(EventNotFoundError):
        ledger.reserve("missing", requester, tickets=1)

    event = make_event(is_active=False)
    with pytest.raises(EventNotFoundError):
        ledger.reserve(event.id, requester, tickets=1)


def test_ticket_count_must_be_positive(ledger, requester, make_event):
    event = make_event()

    with pytest.raises(ValueError):
        ledger.reserve(event.id, requester, tickets=0)


def test_concurrent_reservations_never_oversell(make_event, booked_count):
    capacity = 5
    attempts = 9
    event = make_event(capacity=capacity)
    settings = get_app_settings()
    barrier = threading.Barrier(attempts)
    outcomes = []
    lock = threading.Lock()

    def attempt(index: int) -> None:
        session = SessionLocal()
        try:
            ledger = BookingLedger(session, settings=settings)
            barrier.wait()
            try:
                ledger.reserve(event.id, Requester(user_id=f"user-{index}"), tickets=1)
                outcome = "reserved"
            except CapacityExceededError:
                outcome = "sold_out"
            with lock:
                outcomes.append(outcome)
        finally:
            session.close()

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(attempts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("reserved") == capacity
    assert outcomes.count("sold_out") == attempts - capacity
    assert booked_count(event.id) == capacity


# ---------------------
# PAYMENT OUTCOMES
# ---------------------

def test_mark_paid_confirms_once(ledger, requester, make_event, booked_count):
    event = make_event(capacity=10)
    booking = ledger.reserve(event.id, requester, tickets=2)

    confirmed = ledger.mark_paid(booking.id, "cf_pay_1")
    again, applied = ledger.confirm_payment(booking.id, "cf_pay_2")

    assert confirmed.status == BookingStatus.CONFIRMED
    assert confirmed.payment_status == PaymentStatus.PAID
    assert not applied
    assert again.gateway_payment_id == "cf_pay_1"
    assert booked_count(event.id) == 2


def test_late_payment_id_is_recorded_once(ledger, requester, make_event, booked_count):
    event = make_event(capacity=10)
    booking = ledger.reserve(event.id, requester, tickets=1)

    ledger.mark_paid(booking.id, None)
    filled, applied = ledger.confirm_payment(booking.id, "cf_pay_real")
    ledger.mark_paid(booking.id, "cf_pay_other")

    assert not applied
    assert filled.gateway_payment_id == "cf_pay_real"
    booking = ledger.get(booking.id)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.gateway_payment_id == "cf_pay_real"
    assert booked_count(event.id) == 1


def test_mark_paid_on_cancelled_booking_is_refused(ledger, requester, make_event):
    event = make_event()
    booking = ledger.reserve(event.id, requester, tickets=1)
    ledger.mark_failed(booking.id, reason="expired")

    with pytest.raises(InvalidStateTransitionError):
        ledger.mark_paid(booking.id, "cf_pay_1")

    assert ledger.get(booking.id).status == BookingStatus.CANCELLED


def test_mark_failed_releases_tickets_once(ledger, requester, make_event, booked_count):
    event = make_event(capacity=10)
    booking = ledger.reserve(event.id, requester, tickets=4)

    cancelled = ledger.mark_failed(booking.id, reason="payment failed")
    ledger.mark_failed(booking.id, reason="payment failed again")

    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.payment_status == PaymentStatus.FAILED
    assert booked_count(event.id) == 0


def test_mark_failed_never_reverts_confirmed(ledger, requester, make_event, booked_count):
    event = make_event()
    booking = ledger.reserve(event.id, requester, tickets=1)
    ledger.mark_paid(booking.id, "cf_pay_1")

    result = ledger.mark_failed(booking.id, reason="late failure report")

    assert result.status == BookingStatus.CONFIRMED
    assert result.payment_status == PaymentStatus.PAID
    assert booked_count(event.id) == 1


def test_concurrent_confirmations_apply_once(make_event, requester, ledger):
    event = make_event()
    booking_id = ledger.reserve(event.id, requester, tickets=1).id
    settings = get_app_settings()
    barrier = threading.Barrier(4)
    applied = []
    lock = threading.Lock()

    def confirm(payment_id: str) -> None:
        session = SessionLocal()
        try:
            barrier.wait()
            _, did_apply = BookingLedger(session, settings=settings).confirm_payment(
                booking_id, payment_id
            )
            with lock:
                applied.append(did_apply)
        finally:
            session.close()

    threads = [threading.Thread(target=confirm, args=(f"pay-{i}",)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert applied.count(True) == 1
    assert applied.count(False) == 3


# ---------------------
# READS
# ---------------------

def test_gateway_ids_are_set_once(ledger, requester, make_event):
    event = make_event()
    booking = ledger.reserve(event.id, requester, tickets=1)

    ledger.record_gateway_order(booking.id, "TKT_first")
    ledger.record_gateway_order(booking.id, "TKT_second")
    ledger.record_gateway_session(booking.id, "session_first")
    ledger.record_gateway_session(booking.id, "session_second")

    stored = ledger.get_by_order_id("TKT_first")
    assert stored.id == booking.id
    assert stored.gateway_session_id == "session_first"
    assert ledger.find_by_order_id("TKT_second") is None


def test_bookings_are_scoped_to_their_owner(ledger, requester, make_event):
    event = make_event()
    booking = ledger.reserve(event.id, requester, tickets=1)
    ledger.record_gateway_order(booking.id, "TKT_owned")

    with pytest.raises(BookingNotFoundError):
        ledger.get(booking.id, user_id="someone-else")
    with pytest.raises(BookingNotFoundError):
        ledger.get_by_order_id("TKT_owned", user_id="someone-else")
    assert ledger.get_by_order_id("TKT_owned", user_id=requester.user_id).id == booking.id


def test_booked_count_never_exceeds_capacity_in_db(db, make_event):
    event = make_event(capacity=1)
    event.booked_count = 2

    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()
    assert db.get(Event, event.id).booked_count == 0
