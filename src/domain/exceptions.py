

class TicketingError(Exception):
    """
    Base exception for all domain-level errors
    inside the ticket booking engine.
    """


class InvalidStateTransitionError(TicketingError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class NotFoundError(TicketingError):
    """Raised when an event or booking does not exist."""


class EventNotFoundError(NotFoundError):

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__("Event not found")


class BookingNotFoundError(NotFoundError):

    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__("Booking not found")


class BookingClosedError(TicketingError):
    """Raised when the booking window of an event is closed."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class CapacityExceededError(TicketingError):
    """Raised when not enough tickets are left."""


class ConfigurationError(TicketingError):
    """Raised when an environment setting cannot be used."""


class MisconfiguredGatewayError(ConfigurationError):
    """
    Raised when payment gateway credentials are missing.
    Operator-facing: never retried, never degraded.
    """


class GatewayError(TicketingError):
    """Base class for payment gateway call failures."""


class GatewayRejectedError(GatewayError):
    """The gateway answered, but refused the request."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class GatewayUnavailableError(GatewayError):
    """Transient failure talking to the gateway."""


class GatewayTimeoutError(GatewayUnavailableError):
    """The gateway did not answer within the configured timeout."""

    def __init__(
        self,
        message: str,
        booking_id: str | None = None,
        order_id: str | None = None,
    ):
        self.booking_id = booking_id
        self.order_id = order_id
        super().__init__(message)


class InvalidSignatureError(TicketingError):
    """Raised when a webhook signature does not match."""


class InvalidWebhookPayloadError(TicketingError):
    """Raised when a webhook body is not a usable notification."""
