from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class CreateSessionRequest(CamelModel):
    event_id: str
    tickets: int = Field(ge=1)


class BookingResponse(CamelModel):
    id: str
    event_id: str
    user_id: str
    tickets: int
    total_amount: float
    currency: str
    status: str
    payment_status: str
    payment_method: str
    booking_reference: str
    gateway_order_id: str | None = None
    gateway_session_id: str | None = None
    gateway_payment_id: str | None = None
    created_at: datetime | None = None


class CreateSessionResponse(CamelModel):
    success: bool = True
    booking_id: str
    is_free: bool = False
    order_id: str | None = None
    payment_session_id: str | None = None
    amount: float | None = None
    currency: str | None = None
    booking: BookingResponse | None = None


class VerifyPaymentResponse(CamelModel):
    success: bool
    message: str
    booking: BookingResponse


class WebhookAck(BaseModel):
    success: bool = True


class BookingWindowResponse(CamelModel):
    event_id: str
    allowed: bool
    reason: str
    event_is_past: bool
    gate_closing_time: datetime | None = None


class TicketEvent(CamelModel):
    id: str
    title: str
    start_date: date | None = None
    start_time: str | None = None
    end_date: date | None = None
    end_time: str | None = None


class TicketAttendee(CamelModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None


class TicketResponse(CamelModel):
    booking: BookingResponse
    event: TicketEvent
    attendee: TicketAttendee
    event_start_time: datetime | None = None
    gate_closing_time: datetime | None = None
    event_is_past: bool
