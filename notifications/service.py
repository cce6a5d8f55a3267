from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

import pytz

from .config import DEAL_REMINDER_TYPES, DEFAULT_TIMEZONE, LEVELS_BY_KEY
from .models import (
    ChannelResult,
    NotificationJob,
    NotificationMessage,
    PendingReminder,
    Recipient,
    ReminderResult,
)

LOGGER = logging.getLogger(__name__)

DUE_FORMAT = "%a, %b %d, %Y at %I:%M %p %Z"

Dispatcher = Callable[[Optional[Recipient], NotificationMessage, Dict], List[ChannelResult]]
MarkNotified = Callable[[str, str, str], None]


def build_recipient(profile: Optional[Dict]) -> Optional[Recipient]:
    if not profile:
        return None
    notify = profile.get("notify_on_reminder")
    return Recipient(
        name=profile.get("name") or "",
        email=profile.get("email") or None,
        telegram_chat_id=profile.get("telegram_chat_id") or None,
        slack_user_id=profile.get("slack_user_id") or None,
        timezone=profile.get("timezone") or None,
        notify_on_reminder=notify is not False,
    )


def create_message(subject: str, body_lines: Iterable[str], *, category: str = "reminder") -> NotificationMessage:
    body_text = "\n".join(body_lines)
    return NotificationMessage(subject=subject, body_text=body_text, category=category)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'s' if count != 1 else ''}"


def format_time_until(due_at: datetime, now: datetime) -> str:
    """Human readable distance between now and the due time.

    Past due times get an ``OVERDUE`` suffix. Minutes, hours and days are
    rounded half-up so 90 minutes reads as "2 hours".
    """
    seconds = (due_at - now).total_seconds()
    overdue = seconds < 0
    minutes = abs(_round_half_up(seconds / 60))

    if minutes < 60:
        phrase = _plural(minutes, "minute")
    elif minutes < 24 * 60:
        phrase = _plural(_round_half_up(minutes / 60), "hour")
    else:
        phrase = _plural(_round_half_up(minutes / (24 * 60)), "day")

    return f"{phrase} OVERDUE" if overdue else phrase


def format_due_at(due_at: datetime, tz_name: Optional[str] = None) -> str:
    """Render a naive UTC timestamp in the given zone, then the default zone, then UTC."""
    if due_at.tzinfo is None:
        utc_due = pytz.utc.localize(due_at)
    else:
        utc_due = due_at.astimezone(pytz.utc)

    for candidate in (tz_name, DEFAULT_TIMEZONE):
        if not candidate:
            continue
        try:
            zone = pytz.timezone(candidate)
        except pytz.UnknownTimeZoneError:
            LOGGER.warning("Unknown timezone %r; falling back", candidate)
            continue
        return utc_due.astimezone(zone).strftime(DUE_FORMAT)

    return utc_due.strftime(DUE_FORMAT)


def reminder_message_lines(
    reminder: PendingReminder,
    level: str,
    time_until: str,
    tz_name: Optional[str] = None,
    *,
    overdue: bool = False,
) -> List[str]:
    emoji = LEVELS_BY_KEY[level].emoji
    type_label = None
    if reminder.kind == "deal":
        type_label = DEAL_REMINDER_TYPES.get((reminder.reminder_type or "").upper(), reminder.reminder_type)
        headline = f"{emoji} {type_label or 'Deal'} reminder: {reminder.subject_name}"
    else:
        headline = f"{emoji} Reminder: Follow up with {reminder.subject_name}"

    lines = [headline]
    if overdue:
        lines.append(f"⚠️ {time_until}")
    else:
        lines.append(f"⏳ Due in {time_until}")
    lines.append(f"📅 Due: {format_due_at(reminder.due_at, tz_name)}")

    if type_label:
        lines.append(f"🏷️ Type: {type_label}")
    if reminder.recurring and reminder.frequency:
        lines.append(f"🔁 Repeats {reminder.frequency}")
    if reminder.note:
        lines.append(f"📝 Note: {reminder.note}")
    if reminder.assignee and reminder.assignee.name:
        lines.append(f"👤 Assigned to: {reminder.assignee.name}")
    return lines


def format_reminder_message(
    reminder: PendingReminder,
    level: str,
    time_until: str,
    tz_name: Optional[str] = None,
    *,
    overdue: bool = False,
) -> str:
    return "\n".join(reminder_message_lines(reminder, level, time_until, tz_name, overdue=overdue))


def deliver_reminder_job(
    job: NotificationJob,
    settings: Dict,
    now: datetime,
    *,
    dispatcher: Dispatcher,
    mark_notified: MarkNotified,
) -> ReminderResult:
    """Send one reminder level and record it once any channel accepted it."""
    reminder = job.reminder
    assignee = reminder.assignee

    if assignee is not None and not assignee.notify_on_reminder:
        mark_notified(reminder.kind, reminder.id, job.level)
        LOGGER.info("Skipping %s reminder %s (%s): assignee opted out", reminder.kind, reminder.id, job.level)
        return ReminderResult(
            kind=reminder.kind,
            reminder_id=reminder.id,
            level=job.level,
            success=True,
            skipped=True,
            message="Assignee has notifications disabled",
        )

    time_until = format_time_until(reminder.due_at, now)
    lines = reminder_message_lines(
        reminder,
        job.level,
        time_until,
        assignee.timezone if assignee else None,
        overdue=job.overdue,
    )
    message = create_message(f"Reminder: {reminder.subject_name}", lines, category=job.level)
    message.metadata = {"reminder_id": reminder.id, "type": reminder.kind}

    channel_results = dispatcher(assignee, message, settings)
    delivered = any(result.success for result in channel_results)
    if delivered:
        mark_notified(reminder.kind, reminder.id, job.level)
    else:
        LOGGER.info(
            "%s reminder %s (%s) was not delivered on any channel; will retry",
            reminder.kind,
            reminder.id,
            job.level,
        )

    return ReminderResult(
        kind=reminder.kind,
        reminder_id=reminder.id,
        level=job.level,
        success=delivered,
        channels=channel_results,
    )


def deliver_jobs(
    jobs: Iterable[NotificationJob],
    settings: Dict,
    now: datetime,
    *,
    dispatcher: Dispatcher,
    mark_notified: MarkNotified,
) -> List[ReminderResult]:
    return [
        deliver_reminder_job(job, settings, now, dispatcher=dispatcher, mark_notified=mark_notified)
        for job in jobs
    ]
