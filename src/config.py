# src/config.py

import os
from dataclasses import dataclass
from functools import lru_cache
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from src.domain.exceptions import ConfigurationError, MisconfiguredGatewayError

load_dotenv()


CASHFREE_BASE_URLS = {
    "sandbox": "https://sandbox.cashfree.com/pg",
    "production": "https://api.cashfree.com/pg",
}


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value or default


def _env_number(name: str, default: str, cast, error=ConfigurationError):
    raw = _env(name, default)
    try:
        return cast(raw)
    except ValueError as exc:
        raise error(f"{name} must be a number, got {raw!r}.") from exc


@dataclass(frozen=True)
class GatewaySettings:
    """Cashfree PG credentials and callback URLs."""

    client_id: str | None
    client_secret: str | None
    environment: str = "sandbox"
    api_version: str = "2023-08-01"
    webhook_secret: str | None = None
    timeout_seconds: float = 10.0
    client_url: str = "http://localhost:5173"
    server_url: str = "http://localhost:8000"
    order_id_prefix: str = "TKT"

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        return cls(
            client_id=_env("CASHFREE_CLIENT_ID"),
            client_secret=_env("CASHFREE_CLIENT_SECRET"),
            environment=_env("CASHFREE_ENVIRONMENT", "sandbox").lower(),
            api_version=_env("CASHFREE_API_VERSION", "2023-08-01"),
            webhook_secret=_env("CASHFREE_WEBHOOK_SECRET"),
            timeout_seconds=_env_number(
                "CASHFREE_TIMEOUT_SECONDS",
                "10",
                float,
                error=MisconfiguredGatewayError,
            ),
            client_url=_env("CLIENT_URL", "http://localhost:5173").rstrip("/"),
            server_url=_env("SERVER_URL", "http://localhost:8000").rstrip("/"),
            order_id_prefix=_env("ORDER_ID_PREFIX", "TKT"),
        )

    @property
    def base_url(self) -> str:
        return CASHFREE_BASE_URLS[self.environment]

    def validate(self) -> None:
        missing = [
            name
            for name, value in (
                ("CASHFREE_CLIENT_ID", self.client_id),
                ("CASHFREE_CLIENT_SECRET", self.client_secret),
            )
            if not value
        ]
        if missing:
            raise MisconfiguredGatewayError(
                f"Cashfree credentials not configured. Set {' and '.join(missing)}."
            )
        if self.environment not in CASHFREE_BASE_URLS:
            raise MisconfiguredGatewayError(
                f"Unknown CASHFREE_ENVIRONMENT {self.environment!r}; "
                "expected 'sandbox' or 'production'."
            )
        if self.timeout_seconds <= 0:
            raise MisconfiguredGatewayError("CASHFREE_TIMEOUT_SECONDS must be positive.")


@dataclass(frozen=True)
class AppSettings:
    event_timezone: str = "Asia/Kolkata"
    booking_reference_prefix: str = "TKT"
    pending_booking_ttl_minutes: int = 30
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            event_timezone=_env("EVENT_TIMEZONE", "Asia/Kolkata"),
            booking_reference_prefix=_env("BOOKING_REFERENCE_PREFIX", "TKT"),
            pending_booking_ttl_minutes=_env_number("PENDING_BOOKING_TTL_MINUTES", "30", int),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.event_timezone)


@lru_cache
def get_app_settings() -> AppSettings:
    return AppSettings.from_env()


@lru_cache
def get_gateway_settings() -> GatewaySettings:
    return GatewaySettings.from_env()
