from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from celery import shared_task

from app import mark_reminder_notified, utc_now

from .channels import dispatch
from .collectors import collect_due_jobs, collect_pending_reminders, enabled_levels, load_notification_settings
from .service import deliver_jobs

LOGGER = logging.getLogger(__name__)


def process_pending_notifications(now: Optional[datetime] = None) -> Dict:
    """Run one sweep: find due reminder levels, send them and record what was sent."""
    settings = load_notification_settings()
    levels = enabled_levels(settings)
    if not levels:
        LOGGER.info("No notification levels enabled; skipping sweep")
        return {"processed": 0, "results": [], "message": "No notification levels enabled"}

    now = now or utc_now()
    reminders = collect_pending_reminders(now)
    jobs = collect_due_jobs(reminders, levels, now)
    results = deliver_jobs(jobs, settings, now, dispatcher=dispatch, mark_notified=mark_reminder_notified)

    delivered = sum(1 for result in results if result.success)
    LOGGER.info("Processed %d reminder notifications (%d delivered or skipped)", len(results), delivered)
    return {"processed": len(results), "results": [result.to_dict() for result in results]}


@shared_task(name="notifications.tasks.process_reminder_notifications")
def process_reminder_notifications() -> str:
    summary = process_pending_notifications()
    return str(summary["processed"])
