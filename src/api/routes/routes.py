import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.exc import OperationalError, TimeoutError as SQLAlchemyTimeoutError
from sqlalchemy.orm import Session

from src.application.booking_ledger import BookingLedger
from src.application.reconciliation import ReconciliationCoordinator
from src.api.schemas.schemas import (
    BookingResponse,
    BookingWindowResponse,
    CreateSessionRequest,
    CreateSessionResponse,
    TicketAttendee,
    TicketEvent,
    TicketResponse,
    VerifyPaymentResponse,
    WebhookAck,
)
from src.config import get_app_settings, get_gateway_settings
from src.domain.exceptions import (
    BookingClosedError,
    BookingNotFoundError,
    CapacityExceededError,
    EventNotFoundError,
    GatewayRejectedError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    InvalidSignatureError,
    InvalidStateTransitionError,
    InvalidWebhookPayloadError,
)
from src.domain.requester import Requester
from src.domain.state_machine import BookingStatus, PaymentStatus
from src.domain.time_window import (
    event_start_instant,
    gate_closing_time,
    is_booking_allowed,
    is_event_past,
)
from src.infrastructure.db.models import Booking
from src.infrastructure.db.session import SessionLocal
from src.infrastructure.gateway.base import PaymentGateway


router = APIRouter()
logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_gateway(request: Request) -> PaymentGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment gateway is not initialised.",
        )
    return gateway


def get_requester(
    x_user_id: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
    x_user_phone: str | None = Header(default=None),
) -> Requester:
    # Identity is established upstream; this service only reads it.
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return Requester(
        user_id=x_user_id,
        name=x_user_name,
        email=x_user_email,
        phone=x_user_phone,
    )


def get_ledger(db: Session = Depends(get_db)) -> BookingLedger:
    return BookingLedger(db, settings=get_app_settings())


def get_coordinator(
    ledger: BookingLedger = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ReconciliationCoordinator:
    return ReconciliationCoordinator(
        ledger=ledger,
        gateway=gateway,
        webhook_secret=get_gateway_settings().webhook_secret,
    )


async def read_raw_body(request: Request) -> bytes:
    return await request.body()


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        event_id=booking.event_id,
        user_id=booking.user_id,
        tickets=booking.tickets,
        total_amount=float(booking.total_amount),
        currency=booking.currency,
        status=booking.status.value,
        payment_status=booking.payment_status.value,
        payment_method=booking.payment_method.value,
        booking_reference=booking.booking_reference,
        gateway_order_id=booking.gateway_order_id,
        gateway_session_id=booking.gateway_session_id,
        gateway_payment_id=booking.gateway_payment_id,
        created_at=booking.created_at,
    )


def _is_db_degraded(exc: Exception) -> bool:
    return isinstance(exc, (OperationalError, SQLAlchemyTimeoutError))


def _gateway_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, GatewayTimeoutError):
        return HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail={
                "message": str(exc),
                "bookingId": exc.booking_id,
                "orderId": exc.order_id,
            },
        )
    if isinstance(exc, GatewayUnavailableError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Payment gateway unavailable: {exc}",
        )
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Payment gateway rejected the request: {exc}",
    )


@router.get("/health")
def health():
    return {"message": "Ticket booking engine is running"}


@router.post(
    "/api/payments/create-session",
    response_model=CreateSessionResponse,
    response_model_exclude_none=True,
)
def create_payment_session(
    request: CreateSessionRequest,
    requester: Requester = Depends(get_requester),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    try:
        result = coordinator.create_session(
            event_id=request.event_id,
            requester=requester,
            tickets=request.tickets,
        )
    except EventNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except BookingClosedError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.reason,
        ) from exc
    except CapacityExceededError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except (GatewayRejectedError, GatewayUnavailableError) as exc:
        raise _gateway_http_error(exc) from exc

    booking = result.booking
    if result.is_free:
        return CreateSessionResponse(
            booking_id=booking.id,
            is_free=True,
            booking=_booking_response(booking),
        )

    return CreateSessionResponse(
        booking_id=booking.id,
        order_id=result.order_id,
        payment_session_id=result.payment_session_id,
        amount=float(booking.total_amount),
        currency=booking.currency,
    )


@router.get("/api/payments/verify/{order_id}", response_model=VerifyPaymentResponse)
def verify_payment(
    order_id: str,
    requester: Requester = Depends(get_requester),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    try:
        booking = coordinator.verify(order_id, user_id=requester.user_id)
    except BookingNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except InvalidStateTransitionError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except (GatewayRejectedError, GatewayUnavailableError) as exc:
        raise _gateway_http_error(exc) from exc

    if booking.payment_status == PaymentStatus.PAID:
        message = "Payment verified and booking confirmed"
    elif booking.status == BookingStatus.CANCELLED:
        message = "Payment failed. Booking cancelled"
    else:
        message = "Payment not completed"

    return VerifyPaymentResponse(
        success=booking.payment_status == PaymentStatus.PAID,
        message=message,
        booking=_booking_response(booking),
    )


@router.post("/api/payments/webhook", response_model=WebhookAck)
def payment_webhook(
    raw_body: bytes = Depends(read_raw_body),
    x_webhook_signature: str | None = Header(default=None),
    x_webhook_timestamp: str | None = Header(default=None),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    try:
        coordinator.handle_webhook(
            raw_body,
            signature=x_webhook_signature,
            timestamp=x_webhook_timestamp,
        )
    except InvalidSignatureError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    except InvalidWebhookPayloadError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:
        if not _is_db_degraded(exc):
            raise
        # Non-2xx makes the gateway redeliver later.
        logger.warning("Webhook not processed, database unavailable: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database temporarily unavailable. Retry later.",
        ) from exc

    return WebhookAck()


@router.get("/api/bookings/my", response_model=list[BookingResponse])
def list_my_bookings(
    requester: Requester = Depends(get_requester),
    ledger: BookingLedger = Depends(get_ledger),
):
    return [
        _booking_response(booking)
        for booking in ledger.list_for_requester(requester.user_id)
    ]


@router.get("/api/bookings/{booking_id}/ticket", response_model=TicketResponse)
def get_ticket(
    booking_id: str,
    requester: Requester = Depends(get_requester),
    ledger: BookingLedger = Depends(get_ledger),
):
    try:
        booking = ledger.get(booking_id, user_id=requester.user_id)
    except BookingNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc

    if booking.status != BookingStatus.CONFIRMED or booking.payment_status != PaymentStatus.PAID:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Ticket is not available. Booking is not confirmed.",
        )

    event = ledger.event_repository.get_by_id(booking.event_id)
    if not event:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Event not found for this booking",
        )

    tz = ledger.settings.tz
    return TicketResponse(
        booking=_booking_response(booking),
        event=TicketEvent.model_validate(event),
        attendee=TicketAttendee(
            name=booking.attendee_name or requester.name,
            email=booking.attendee_email or requester.email,
            phone=booking.attendee_phone or requester.phone,
        ),
        event_start_time=event_start_instant(event, tz),
        gate_closing_time=gate_closing_time(event, tz),
        event_is_past=is_event_past(event, tz=tz),
    )


@router.get("/api/events/{event_id}/booking-window", response_model=BookingWindowResponse)
def get_booking_window(
    event_id: str,
    ledger: BookingLedger = Depends(get_ledger),
):
    try:
        event = ledger.get_event(event_id)
    except EventNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc

    tz = ledger.settings.tz
    window = is_booking_allowed(event, tz=tz)
    return BookingWindowResponse(
        event_id=event.id,
        allowed=window.allowed,
        reason=window.reason,
        event_is_past=is_event_past(event, tz=tz),
        gate_closing_time=gate_closing_time(event, tz),
    )
