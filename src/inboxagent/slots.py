from datetime import datetime, time, timedelta, tzinfo

from inboxagent.errors import InputValidationError
from inboxagent.models import TimeSlot


def format_slot(slot: TimeSlot, tz: tzinfo) -> str:
    """Human-readable slot start, e.g. ``Tuesday, October 21 at 10:00 AM EDT``."""
    start = slot.start.astimezone(tz)
    clock = start.strftime("%I:%M %p").lstrip("0")
    return f"{start:%A, %B} {start.day} at {clock} {start.tzname()}"


def format_options(slots: list[TimeSlot], tz: tzinfo) -> str:
    return "\n".join(f"{i}. {format_slot(slot, tz)}" for i, slot in enumerate(slots, 1))


def overlaps(start: datetime, end: datetime, busy: TimeSlot) -> bool:
    """Half-open interval overlap test."""
    return start < busy.end and end > busy.start


def find_available_slots(
    busy: list[TimeSlot],
    range_start: datetime,
    range_end: datetime,
    duration_minutes: int,
    *,
    tz: tzinfo,
    business_start_hour: int = 9,
    business_end_hour: int = 17,
    limit: int = 5,
) -> list[TimeSlot]:
    """Return the earliest free, hour-aligned slots inside business hours.

    Days are walked in order from *range_start* to *range_end* in the *tz*
    time zone, skipping Saturdays and Sundays. A candidate starts on the hour
    between *business_start_hour* and *business_end_hour*, must finish by
    closing time, must lie within the requested range and must not overlap
    any *busy* interval. The walk stops once *limit* slots are collected.
    """
    if duration_minutes <= 0:
        raise InputValidationError("Meeting duration must be positive")
    if range_start.tzinfo is None or range_end.tzinfo is None:
        raise InputValidationError("Slot search range must be timezone-aware")

    duration = timedelta(minutes=duration_minutes)
    slots: list[TimeSlot] = []

    day = range_start.astimezone(tz).date()
    last_day = range_end.astimezone(tz).date()
    while day <= last_day and len(slots) < limit:
        if day.weekday() < 5:
            midnight = datetime.combine(day, time(0), tzinfo=tz)
            closing = midnight + timedelta(hours=business_end_hour)
            for hour in range(business_start_hour, business_end_hour):
                start = midnight + timedelta(hours=hour)
                end = start + duration
                if end > closing:
                    break
                if start < range_start or end > range_end:
                    continue
                if any(overlaps(start, end, interval) for interval in busy):
                    continue
                slots.append(TimeSlot(start=start, end=end))
                if len(slots) >= limit:
                    break
        day += timedelta(days=1)

    return slots
