# src/infrastructure/repositories/event_repository.py

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from src.infrastructure.db.models import Event


class EventRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, event_id: str) -> Event | None:
        stmt = select(Event).where(Event.id == event_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def try_reserve(self, event_id: str, tickets: int) -> bool:
        """
        Conditional increment of booked_count.

        Check and increment happen in one UPDATE, so two concurrent
        requests for the last seats cannot both match.
        """
        stmt = (
            update(Event)
            .where(Event.id == event_id)
            .where(
                or_(
                    Event.capacity.is_(None),
                    Event.booked_count + tickets <= Event.capacity,
                )
            )
            .values(booked_count=Event.booked_count + tickets)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def release(self, event_id: str, tickets: int) -> bool:
        stmt = (
            update(Event)
            .where(Event.id == event_id)
            .where(Event.booked_count >= tickets)
            .values(booked_count=Event.booked_count - tickets)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1
