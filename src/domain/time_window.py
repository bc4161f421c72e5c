# src/domain/time_window.py

"""
Booking window and "is this event over" rules.

Pure functions over an event's schedule fields. Event dates and
times-of-day are wall-clock values in the event's timezone; callers pass
that timezone and the current instant explicitly.
"""

import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import NamedTuple, Optional, Protocol


BOOKING_CUTOFF = timedelta(minutes=30)

REASON_MISSING_SCHEDULE = "missing schedule"
REASON_INVALID_START_TIME = "invalid start time"
REASON_CLOSED = "Booking closed. Event starts in less than 30 minutes."
REASON_OPEN = "Booking is allowed"

_TIME_PATTERN = re.compile(
    r"^\s*(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<period>[AP]M)?\s*$",
    re.IGNORECASE,
)


class EventSchedule(Protocol):
    start_date: Optional[date]
    start_time: Optional[str]
    end_date: Optional[date]
    end_time: Optional[str]


class BookingWindow(NamedTuple):
    allowed: bool
    reason: str


def parse_time_of_day(value: Optional[str]) -> Optional[time]:
    """
    Parse "14:30", "2:00 PM" or "2 pm" into a time.

    Returns None for anything that is not a valid time of day.
    """
    if not value:
        return None

    match = _TIME_PATTERN.match(value)
    if not match:
        return None

    hour = int(match.group("hour"))
    minute = int(match.group("minute") or 0)
    period = match.group("period")

    if minute > 59:
        return None

    if period:
        if not 1 <= hour <= 12:
            return None
        if period.upper() == "AM":
            hour = 0 if hour == 12 else hour
        else:
            hour = 12 if hour == 12 else hour + 12
    elif hour > 23:
        return None

    return time(hour, minute)


def _at(day: date, moment: time, tz: tzinfo) -> datetime:
    return datetime.combine(day, moment, tzinfo=tz)


def _end_of_day(day: date, tz: tzinfo) -> datetime:
    return _at(day, time.max, tz)


def event_start_instant(
    event: EventSchedule,
    tz: tzinfo = timezone.utc,
) -> Optional[datetime]:
    if not event.start_date:
        return None
    start = parse_time_of_day(event.start_time)
    if start is None:
        return None
    return _at(event.start_date, start, tz)


def effective_end_instant(
    event: EventSchedule,
    tz: tzinfo = timezone.utc,
) -> Optional[datetime]:
    """
    Resolve when an event ends, trying in order:
    end date (+ end time), start date + end time, start date + start time,
    and finally the last instant of the start date (all-day event).
    """
    if event.end_date:
        end = parse_time_of_day(event.end_time)
        if end is not None:
            return _at(event.end_date, end, tz)
        return _end_of_day(event.end_date, tz)

    if not event.start_date:
        return None

    end = parse_time_of_day(event.end_time)
    if end is not None:
        return _at(event.start_date, end, tz)

    start = parse_time_of_day(event.start_time)
    if start is not None:
        return _at(event.start_date, start, tz)

    return _end_of_day(event.start_date, tz)


def is_event_past(
    event: EventSchedule,
    now: Optional[datetime] = None,
    tz: tzinfo = timezone.utc,
) -> bool:
    end = effective_end_instant(event, tz)
    if end is None:
        return False
    now = now or datetime.now(tz)
    return now > end


def gate_closing_time(
    event: EventSchedule,
    tz: tzinfo = timezone.utc,
) -> Optional[datetime]:
    start = event_start_instant(event, tz)
    if start is None:
        return None
    return start - BOOKING_CUTOFF


def is_booking_allowed(
    event: EventSchedule,
    now: Optional[datetime] = None,
    tz: tzinfo = timezone.utc,
) -> BookingWindow:
    if not event.start_date or not event.start_time:
        return BookingWindow(False, REASON_MISSING_SCHEDULE)

    close_at = gate_closing_time(event, tz)
    if close_at is None:
        return BookingWindow(False, REASON_INVALID_START_TIME)

    now = now or datetime.now(tz)
    if now < close_at:
        return BookingWindow(True, REASON_OPEN)
    return BookingWindow(False, REASON_CLOSED)
