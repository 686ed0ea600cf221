# osiris/core/schedule.py
"""Business-time helpers: local dates, business hours, display formatting."""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from osiris.config import settings


def business_tz() -> ZoneInfo:
    return ZoneInfo(settings.timezone)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def local_now(now: datetime | None = None) -> datetime:
    return (now or utc_now()).astimezone(business_tz())


def local_today(now: datetime | None = None) -> date:
    return local_now(now).date()


def is_business_hours(now: datetime | None = None) -> bool:
    """True on a configured business day within [start_hour, end_hour) local time."""
    current = local_now(now)
    if current.weekday() not in settings.business_day_numbers:
        return False
    return settings.business_hours_start <= current.hour < settings.business_hours_end


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """[start, end) of a local business day, as aware datetimes."""
    tz = business_tz()
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def format_date(day: date) -> str:
    """'Friday, March 14'"""
    return f"{day.strftime('%A, %B')} {day.day}"


def format_time(hhmm: str | None) -> str:
    """'14:30' → '2:30 PM'; unparseable values are returned unchanged."""
    if not hhmm:
        return "TBD"
    try:
        parsed = datetime.strptime(hhmm[:5], "%H:%M")
    except ValueError:
        return hhmm
    return parsed.strftime("%I:%M %p").lstrip("0")


def next_business_opening(now: datetime | None = None) -> datetime:
    """Start of the next business-hours window (now, if already inside one)."""
    current = local_now(now)
    if is_business_hours(current):
        return current

    candidate = current.replace(hour=settings.business_hours_start, minute=0, second=0, microsecond=0)
    if current.hour >= settings.business_hours_start:
        candidate += timedelta(days=1)

    for _ in range(8):
        if candidate.weekday() in settings.business_day_numbers:
            return candidate
        candidate += timedelta(days=1)

    # No business day configured at all
    return candidate
