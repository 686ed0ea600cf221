# osiris/core/dispatch/messages.py
"""
Telegram texts for team leads and the operator control chat.

All texts use Telegram HTML parse mode; user-supplied values are escaped.
"""
from __future__ import annotations

from html import escape

from osiris.core.domain import Job
from osiris.core.ports import Buttons
from osiris.core.schedule import format_date, format_time

ACCEPT_PREFIX = "accept_job:"
PASS_PREFIX = "pass_job:"


def _e(value) -> str:
    return escape(str(value or ""), quote=False)


def _location(job: Job) -> str:
    return ", ".join(part for part in (_e(job.address), _e(job.city)) if part)


def offer_buttons(job_id: str) -> Buttons:
    return [[("✅ Accept Job", f"{ACCEPT_PREFIX}{job_id}"), ("❌ Pass", f"{PASS_PREFIX}{job_id}")]]


def job_offer(job: Job, *, urgent: bool = False) -> str:
    job_type = f"URGENT - {job.job_type}" if urgent else job.job_type
    return (
        f"🔔 <b>NEW JOB AVAILABLE</b>\n\n"
        f"📋 <b>Job {job.short_ref}</b>\n"
        f"👤 {_e(job.customer_name)}\n"
        f"📍 {_location(job)}\n"
        f"📅 {format_date(job.date)} at {format_time(job.scheduled_time)}\n"
        f"⏱ Est. {job.estimated_hours:g} hours\n"
        f"💰 ${job.total_amount:.2f}\n"
        f"🏷 {_e(job_type)}\n\n"
        f"Tap below to claim this job:"
    )


def job_claimed(job: Job, lead_name: str) -> str:
    return (
        f"✅ <b>JOB CLAIMED</b>\n\n"
        f"{_e(lead_name)}, you've claimed job {job.short_ref}!\n\n"
        f"📋 <b>Details:</b>\n"
        f"👤 {_e(job.customer_name)}\n"
        f"📍 {_location(job)}\n"
        f"📅 {format_date(job.date)} at {format_time(job.scheduled_time)}\n\n"
        f"Remember to:\n"
        f"1. Check your route the night before\n"
        f"2. Text customer when on the way\n"
        f"3. Report tips & upsells after completion"
    )


def offer_taken(job: Job, claimed_by: str) -> str:
    return f"ℹ️ Job {job.short_ref} was claimed by {_e(claimed_by)}."


def offer_withdrawn(job: Job) -> str:
    return f"ℹ️ Job {job.short_ref} is no longer available."


def offer_passed(job: Job) -> str:
    return f"👌 You passed on job {job.short_ref}."


def escalation(job: Job, reason: str) -> str:
    return (
        f"🚨 <b>URGENT - ESCALATION</b>\n\n"
        f"Job {job.short_ref} requires immediate attention!\n\n"
        f"👤 {_e(job.customer_name)}\n"
        f"📍 {_location(job)}\n"
        f"📅 {format_date(job.date)} at {format_time(job.scheduled_time)}\n\n"
        f"⚠️ Reason: {_e(reason)}\n\n"
        f"This job was not claimed within the window and needs manual assignment."
    )


def daily_briefing(lead_name: str, jobs: list[Job]) -> str:
    total = sum(job.total_amount for job in jobs)
    text = (
        f"☀️ <b>Good Morning, {_e(lead_name)}!</b>\n\n"
        f"📅 <b>Today's Schedule ({len(jobs)} jobs)</b>\n"
        f"💰 Target Revenue: ${total:.2f}\n\n"
    )
    for i, job in enumerate(jobs, start=1):
        text += (
            f"{i}. {format_time(job.scheduled_time)} - {_e(job.customer_name)}\n"
            f"   📍 {_location(job)}\n"
            f"   💵 ${job.total_amount:.2f}\n\n"
        )
    return text + "Have a great day! 💪"


def earnings_recorded(kind: str, amount: float, job: Job) -> str:
    icon, label = ("💵", "Tip") if kind == "tip" else ("📈", "Upsell")
    return (
        f"{icon} <b>{label} Recorded!</b>\n\n"
        f"Amount: ${amount:.2f}\n"
        f"Job: {job.short_ref}\n\n"
        f"Great work! Keep it up! 🎉"
    )


def job_confirmed(job: Job) -> str:
    return (
        f"👍 Job {job.short_ref} confirmed for "
        f"{format_date(job.date)} at {format_time(job.scheduled_time)}."
    )


def job_cancelled_notice(job: Job) -> str:
    return (
        f"❌ <b>JOB CANCELLED</b>\n\n"
        f"Job {job.short_ref} ({_e(job.customer_name)}) on "
        f"{format_date(job.date)} has been cancelled."
    )


def rain_day_notice(job: Job, old_date: str) -> str:
    return (
        f"🌧 <b>RAIN DAY</b>\n\n"
        f"Job {job.short_ref} ({_e(job.customer_name)}) moved from {old_date} to "
        f"{format_date(job.date)}. It has been released and will be offered again."
    )


def help_text() -> str:
    return (
        "Commands:\n"
        "• <code>tip job 123 - $20</code>\n"
        "• <code>upsell job 123 - inside oven</code>\n"
        "• <code>confirm job 123</code>"
    )
