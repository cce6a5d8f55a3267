"""Shared configuration defaults for the notification system."""
from __future__ import annotations

import os
from datetime import timedelta
from typing import Dict, List, NamedTuple


class NotificationLevel(NamedTuple):
    key: str
    minutes: int
    setting_field: str
    flag_field: str
    label: str
    emoji: str

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.minutes)


# Ordered longest lead time first.
NOTIFICATION_LEVELS: List[NotificationLevel] = [
    NotificationLevel("1day", 24 * 60, "notify_1day_before", "notified_1day", "1 day before", "🗓️"),
    NotificationLevel("1hour", 60, "notify_1hour_before", "notified_1hour", "1 hour before", "⏰"),
    NotificationLevel("30min", 30, "notify_30min_before", "notified_30min", "30 minutes before", "⏰"),
    NotificationLevel("15min", 15, "notify_15min_before", "notified_15min", "15 minutes before", "🚨"),
]

LEVELS_BY_KEY: Dict[str, NotificationLevel] = {level.key: level for level in NOTIFICATION_LEVELS}
ALL_LEVEL_KEYS = frozenset(LEVELS_BY_KEY)

# Overdue reminders are sent once, formatted like the shortest lead time.
OVERDUE_LEVEL = "15min"
OVERDUE_LOOKBACK = timedelta(hours=24)

DEFAULT_NOTIFICATION_SETTINGS = {
    "email_enabled": False,
    "email_address": None,
    "telegram_enabled": False,
    "telegram_bot_token": None,
    "telegram_chat_id": None,
    "slack_enabled": False,
    "slack_webhook_url": None,
    "slack_channel": None,
    "notify_1day_before": False,
    "notify_1hour_before": False,
    "notify_30min_before": True,
    "notify_15min_before": False,
}

BOOLEAN_SETTING_FIELDS = {
    "email_enabled",
    "telegram_enabled",
    "slack_enabled",
    "notify_1day_before",
    "notify_1hour_before",
    "notify_30min_before",
    "notify_15min_before",
}

VALID_CHANNELS = ("email", "telegram", "slack")

DEAL_REMINDER_TYPES = {
    "PAYMENT": "Payment",
    "VESTING": "Vesting",
    "REVIEW": "Review",
    "OTHER": "Other",
}
DEFAULT_DEAL_REMINDER_TYPE = "PAYMENT"

VALID_FREQUENCIES = ("weekly", "monthly", "quarterly", "annually")

DEFAULT_TIMEZONE = os.getenv("NOTIFY_DEFAULT_TIMEZONE", "America/New_York")
CHANNEL_TIMEOUT = float(os.getenv("NOTIFY_CHANNEL_TIMEOUT", "10"))

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"
TEST_MESSAGE = "🔔 Test notification from Pipeline CRM - Your notifications are working!"
