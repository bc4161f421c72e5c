import logging
import os
import time
from datetime import timedelta

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from src.api.routes.routes import router
from src.config import get_app_settings, get_gateway_settings
from src.domain.exceptions import MisconfiguredGatewayError
from src.infrastructure.db.session import engine
from src.infrastructure.db.models import Base
from src.infrastructure.gateway.cashfree import CashfreeGateway

logging.basicConfig(
    level=get_app_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(title="Ticket Booking Engine")

app.include_router(router)
logger = logging.getLogger(__name__)


def _wait_for_db() -> None:
    # Handles the common case where API starts before Postgres is ready.
    max_retries = int(os.getenv("DB_CONNECT_MAX_RETRIES", "30"))
    retry_delay_seconds = float(os.getenv("DB_CONNECT_RETRY_DELAY", "1.5"))

    for attempt in range(1, max_retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is reachable.")
            return
        except OperationalError:
            if attempt == max_retries:
                logger.exception(
                    "Database not reachable after %s attempts. Check DATABASE_URL and Postgres status.",
                    max_retries,
                )
                raise
            logger.warning(
                "Database not ready (attempt %s/%s). Retrying in %.1f seconds...",
                attempt,
                max_retries,
                retry_delay_seconds,
            )
            time.sleep(retry_delay_seconds)


def _build_gateway() -> CashfreeGateway:
    settings = get_app_settings()
    try:
        return CashfreeGateway(
            get_gateway_settings(),
            order_ttl=timedelta(minutes=settings.pending_booking_ttl_minutes),
        )
    except MisconfiguredGatewayError:
        logger.critical("Refusing to start: payment gateway is misconfigured.")
        raise


@app.on_event("startup")
def on_startup() -> None:
    _wait_for_db()
    Base.metadata.create_all(bind=engine)
    app.state.gateway = _build_gateway()


@app.on_event("shutdown")
def on_shutdown() -> None:
    gateway = getattr(app.state, "gateway", None)
    if gateway is not None:
        gateway.close()
