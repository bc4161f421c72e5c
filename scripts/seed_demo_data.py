from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select

from src.config import get_app_settings
from src.infrastructure.db.models import Base, Event
from src.infrastructure.db.session import SessionLocal, engine


def _local(days_from_now: int, hour: int, minute: int) -> datetime:
    now_local = datetime.now(get_app_settings().tz)
    target = now_local + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


def seed_events(db) -> None:
    event_defs = [
        {
            "title": "Sunidhi Chauhan Live Concert",
            "price": Decimal("1800"),
            "capacity": 400,
            "start": _local(days_from_now=10, hour=19, minute=30),
            "end_time": "11:00 PM",
        },
        {
            "title": "Holi Festival 2026",
            "price": Decimal("1200"),
            "capacity": 700,
            "start": _local(days_from_now=15, hour=11, minute=0),
            "end_days": 1,
        },
        {
            "title": "Open Mic Evening",
            "price": Decimal("0"),
            "capacity": None,
            "start": _local(days_from_now=3, hour=18, minute=0),
        },
    ]

    for item in event_defs:
        start = item["start"]
        end_date = start.date() + timedelta(days=item["end_days"]) if "end_days" in item else None
        existing = db.execute(
            select(Event).where(Event.title == item["title"])
        ).scalar_one_or_none()
        if existing:
            event = existing
        else:
            event = Event(title=item["title"], booked_count=0)
            db.add(event)

        event.price = item["price"]
        event.currency = "INR"
        event.capacity = item["capacity"]
        event.is_active = True
        event.start_date = start.date()
        event.start_time = start.strftime("%I:%M %p")
        event.end_date = end_date
        event.end_time = item.get("end_time")


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_events(db)
        db.commit()
        print("Seed complete: concert, festival and a free open mic added.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
