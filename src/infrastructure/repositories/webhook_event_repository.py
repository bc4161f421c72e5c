# src/infrastructure/repositories/webhook_event_repository.py

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.infrastructure.db.models import PaymentWebhookEvent


class WebhookEventRepository:

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        provider: str,
        order_id: str | None,
        payload_hash: str,
        outcome: str,
        booking_id: str | None = None,
        event_type: str | None = None,
    ) -> PaymentWebhookEvent:
        entry = PaymentWebhookEvent(
            provider=provider,
            order_id=order_id,
            booking_id=booking_id,
            event_type=event_type,
            payload_hash=payload_hash,
            outcome=outcome,
        )
        self.db.add(entry)
        return entry

    def list_for_order(self, order_id: str) -> list[PaymentWebhookEvent]:
        stmt = (
            select(PaymentWebhookEvent)
            .where(PaymentWebhookEvent.order_id == order_id)
            .order_by(PaymentWebhookEvent.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())
