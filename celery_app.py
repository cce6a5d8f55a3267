"""Celery application factory for the reminder notification sweep."""
from __future__ import annotations

import os
from celery import Celery

DEFAULT_BROKER_URL = os.getenv("CELERY_BROKER_URL", os.getenv("REDIS_URL", "redis://localhost:6379/0"))
DEFAULT_BACKEND_URL = os.getenv("CELERY_RESULT_BACKEND", DEFAULT_BROKER_URL)


def create_celery_app() -> Celery:
    """Create and configure the Celery app for the project."""
    celery_app = Celery(
        "crm_notifications",
        broker=DEFAULT_BROKER_URL,
        backend=DEFAULT_BACKEND_URL,
        include=["notifications.tasks"],
    )

    celery_app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone=os.getenv("CELERY_TIMEZONE", "UTC"),
        enable_utc=True,
        beat_schedule={
            "process-reminder-notifications": {
                "task": "notifications.tasks.process_reminder_notifications",
                "schedule": float(os.getenv("NOTIFY_SWEEP_SECONDS", "60")),
            },
        },
    )

    return celery_app


celery_app = create_celery_app()
