# osiris/core/sms_templates.py
"""Customer-facing SMS texts (sent through OpenPhone)."""
from __future__ import annotations

from osiris.config import settings


def _first_name(name: str | None) -> str:
    name = (name or "").strip()
    return name.split()[0] if name else "there"


def lead_followup_initial(name: str | None) -> str:
    return (
        f"Hi {_first_name(name)}! Thanks for reaching out to {settings.business_name}. "
        f"We'd love to help with your cleaning needs. When works best for a quick call?"
    )


def lead_followup_second(name: str | None) -> str:
    return (
        f"Hey {_first_name(name)}, just checking in! Still interested in getting a cleaning quote? "
        f"Reply YES and we'll get you scheduled right away."
    )


def cleaner_assigned(customer_name: str | None, cleaner_name: str, date: str, time: str,
                     cleaner_phone: str | None) -> str:
    contact = cleaner_phone or "us"
    return (
        f"Hi {_first_name(customer_name)}! {cleaner_name} will be your cleaner on {date} at {time}. "
        f"Contact them at {contact} if needed. See you soon!"
    )


def post_cleaning_review(name: str | None) -> str:
    return (
        f"Hi {_first_name(name)}! We hope you loved your clean. Would you mind leaving us a quick review? "
        f"It really helps! {settings.review_link}"
    ).rstrip()


def monthly_reengagement(name: str | None, discount: str, days_since: int) -> str:
    return (
        f"Hi {_first_name(name)}! It's been {days_since} days since your last clean with "
        f"{settings.business_name}. Book your next visit this month and get {discount} off. "
        f"Reply BOOK to schedule!"
    )


def day_before_reminder(name: str | None, date: str, time: str) -> str:
    return (
        f"Hi {_first_name(name)}! Reminder: your {settings.business_name} cleaning is tomorrow, "
        f"{date} at {time}. Reply to this text if anything changes."
    )


def on_my_way(name: str | None, team_lead_name: str, eta: str) -> str:
    return (
        f"Hi {_first_name(name)}! {team_lead_name} from {settings.business_name} is on the way "
        f"and should arrive in about {eta}."
    )


def rain_day_reschedule(name: str | None, old_date: str, new_date: str) -> str:
    return (
        f"Hi {_first_name(name)}, due to weather we need to move your {old_date} service "
        f"to {new_date}. Reply to this text if the new date doesn't work for you."
    )


def job_cancelled(name: str | None, date: str) -> str:
    return (
        f"Hi {_first_name(name)}, your cleaning on {date} has been cancelled. "
        f"Reply to this text if you'd like to book a new date."
    )
