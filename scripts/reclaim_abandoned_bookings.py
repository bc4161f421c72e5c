"""
Settle pending bookings whose checkout was abandoned.

Run periodically (cron, k8s CronJob). Each stale booking is checked
against the gateway before its tickets are released.
"""

import argparse
import logging
from datetime import timedelta

from src.application.booking_ledger import BookingLedger
from src.application.reconciliation import ReconciliationCoordinator
from src.config import get_app_settings, get_gateway_settings
from src.infrastructure.db.session import get_db_session
from src.infrastructure.gateway.cashfree import CashfreeGateway


def main() -> None:
    settings = get_app_settings()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--older-than-minutes",
        type=int,
        default=settings.pending_booking_ttl_minutes,
    )
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    ttl = timedelta(minutes=args.older_than_minutes)
    gateway = CashfreeGateway(get_gateway_settings(), order_ttl=ttl)
    try:
        with get_db_session() as db:
            coordinator = ReconciliationCoordinator(
                ledger=BookingLedger(db, settings=settings),
                gateway=gateway,
            )
            report = coordinator.reclaim_abandoned(older_than=ttl, limit=args.limit)
    finally:
        gateway.close()

    print(
        f"confirmed={report.confirmed} cancelled={report.cancelled} "
        f"still_pending={report.still_pending} skipped={report.skipped}"
    )


if __name__ == "__main__":
    main()
