"""
Email bodies for availability notifications.

Builders only; delivery goes through the notification service. Times are
rendered in the recipient's own timezone.
"""

from datetime import datetime
from html import escape
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.config import settings
from app.features.availability.domain.models import Event, Member, PromptContext, to_utc
from app.services.notification_service import EmailMessage

REMINDER_SUBJECTS = {
    "50_percent": "Reminder: share your availability for {activity}",
    "90_percent": "Last call: {activity} availability closes soon",
}


def form_url(prompt_id: str, token: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/availability/{prompt_id}?token={token}"


def format_local(value: datetime, timezone: str) -> str:
    try:
        zone = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo("UTC")
    local = to_utc(value).astimezone(zone)
    return local.strftime("%A %d %B, %H:%M %Z")


def _wrap(body: str) -> str:
    return f'<div style="font-family: sans-serif; line-height: 1.5">{body}</div>'


def build_reminder_email(
    context: PromptContext, member: Member, token: str, reminder_type: str
) -> EmailMessage:
    activity = context.activity_name
    subject = REMINDER_SUBJECTS.get(reminder_type, REMINDER_SUBJECTS["50_percent"]).format(
        activity=activity
    )
    link = form_url(context.prompt.id, token)
    deadline = format_local(context.prompt.deadline, member.timezone)

    html = _wrap(
        f"<p>Hi {escape(member.display_name)},</p>"
        f"<p>{escape(context.group_name)} is picking a time for {escape(activity)} "
        f"and hasn't heard from you yet. Responses close {escape(deadline)}.</p>"
        + (f"<p>{escape(context.prompt.custom_message)}</p>" if context.prompt.custom_message else "")
        + f'<p><a href="{escape(link)}">Share your availability</a></p>'
    )
    text = (
        f"Hi {member.display_name},\n\n"
        f"{context.group_name} is picking a time for {activity}. "
        f"Responses close {deadline}.\n\n{link}\n"
    )
    return EmailMessage(
        to=member.email or "",
        subject=subject,
        html=html,
        text=text,
        tags={"category": "availability_reminder", "reminder_type": reminder_type},
    )


def build_event_confirmation_email(
    context: PromptContext, member: Member, event: Event
) -> EmailMessage:
    activity = context.activity_name
    when = format_local(event.start_date, member.timezone)
    subject = f"{activity.capitalize()} is on: {when}"

    html = _wrap(
        f"<p>Hi {escape(member.display_name)},</p>"
        f"<p>{escape(context.group_name)} has a date. {escape(activity.capitalize())} "
        f"is scheduled for <strong>{escape(when)}</strong> "
        f"({event.duration_minutes} minutes).</p>"
        f"<p>{event.participant_count} people are in.</p>"
    )
    text = (
        f"Hi {member.display_name},\n\n"
        f"{activity.capitalize()} with {context.group_name} is scheduled for {when} "
        f"({event.duration_minutes} minutes).\n"
    )
    return EmailMessage(
        to=member.email or "",
        subject=subject,
        html=html,
        text=text,
        tags={"category": "event_confirmation"},
    )


def build_no_consensus_email(
    context: PromptContext, member: Member, suggestion_count: int
) -> EmailMessage:
    activity = context.activity_name
    subject = f"No time found for {activity}"
    if suggestion_count:
        detail = (
            f"There were {suggestion_count} candidate times, but none had enough "
            "people available."
        )
    else:
        detail = "Nobody shared a time that works."

    html = _wrap(
        f"<p>Hi {escape(member.display_name)},</p>"
        f"<p>The availability poll for {escape(activity)} in "
        f"{escape(context.group_name)} has closed without a consensus. {escape(detail)}</p>"
        "<p>You can pick a time manually or start a new poll.</p>"
    )
    text = (
        f"Hi {member.display_name},\n\n"
        f"The availability poll for {activity} in {context.group_name} closed "
        f"without a consensus. {detail}\n"
    )
    return EmailMessage(
        to=member.email or "",
        subject=subject,
        html=html,
        text=text,
        tags={"category": "no_consensus"},
    )
