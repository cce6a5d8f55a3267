from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List

from app import get_notification_settings, load_pending_reminders

from .config import ALL_LEVEL_KEYS, NOTIFICATION_LEVELS, OVERDUE_LEVEL, OVERDUE_LOOKBACK, NotificationLevel
from .models import NotificationJob, PendingReminder
from .service import build_recipient

LOGGER = logging.getLogger(__name__)


def load_notification_settings() -> Dict:
    return get_notification_settings()


def enabled_levels(settings: Dict) -> List[NotificationLevel]:
    return [level for level in NOTIFICATION_LEVELS if settings.get(level.setting_field)]


def build_pending_reminder(record: Dict) -> PendingReminder:
    return PendingReminder(
        kind=record["type"],
        id=str(record["id"]),
        subject_name=record.get("subject_name") or "",
        due_at=record["due_at"],
        note=record.get("note") or None,
        completed=bool(record.get("completed")),
        notified_levels=frozenset(record.get("notified_levels") or ()),
        reminder_type=record.get("reminder_type"),
        recurring=bool(record.get("recurring")),
        frequency=record.get("frequency"),
        assignee=build_recipient(record.get("assignee")),
    )


def collect_pending_reminders(now: datetime) -> List[PendingReminder]:
    records = load_pending_reminders(now - OVERDUE_LOOKBACK)
    return [build_pending_reminder(record) for record in records]


def in_level_window(due_at: datetime, level: NotificationLevel, now: datetime) -> bool:
    window_start = due_at - level.window
    return window_start <= now < due_at


def collect_due_jobs(
    reminders: Iterable[PendingReminder],
    levels: Iterable[NotificationLevel],
    now: datetime,
) -> List[NotificationJob]:
    """Decide which reminder levels are due in this sweep.

    Overdue reminders get a single send at the shortest level, and only while
    no level has been notified yet. Future reminders get one job per enabled
    level whose window contains ``now`` and that has not been sent.
    """
    levels = list(levels)
    jobs: List[NotificationJob] = []
    for reminder in reminders:
        if reminder.completed:
            continue
        notified = reminder.notified_levels
        if ALL_LEVEL_KEYS <= notified:
            continue

        if reminder.due_at <= now:
            # Any earlier level counts as handled, even if others never fired.
            if not notified:
                jobs.append(NotificationJob(reminder=reminder, level=OVERDUE_LEVEL, overdue=True))
            continue

        for level in levels:
            if level.key in notified:
                continue
            if in_level_window(reminder.due_at, level, now):
                jobs.append(NotificationJob(reminder=reminder, level=level.key))

    LOGGER.debug("Collected %d due notification jobs", len(jobs))
    return jobs


__all__ = [
    "load_notification_settings",
    "enabled_levels",
    "build_pending_reminder",
    "collect_pending_reminders",
    "in_level_window",
    "collect_due_jobs",
]
