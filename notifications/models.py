from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional


@dataclass(slots=True)
class Recipient:
    """The team member a reminder is assigned to."""

    name: str
    email: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    slack_user_id: Optional[str] = None
    timezone: Optional[str] = None
    notify_on_reminder: bool = True


@dataclass(slots=True)
class NotificationMessage:
    """Structured payload passed to concrete notification senders."""

    subject: str
    body_text: str
    category: str = "reminder"
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class PendingReminder:
    """A lead or deal reminder as seen by the dispatcher."""

    kind: str  # lead, deal
    id: str
    subject_name: str
    due_at: datetime
    note: Optional[str] = None
    completed: bool = False
    notified_levels: FrozenSet[str] = frozenset()
    reminder_type: Optional[str] = None
    recurring: bool = False
    frequency: Optional[str] = None
    assignee: Optional[Recipient] = None


@dataclass(slots=True)
class NotificationJob:
    """One reminder level due for delivery in the current sweep."""

    reminder: PendingReminder
    level: str
    overdue: bool = False


@dataclass(slots=True)
class ChannelResult:
    channel: str
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"channel": self.channel, "success": self.success}
        if self.error:
            data["error"] = self.error
        return data


@dataclass(slots=True)
class ReminderResult:
    kind: str
    reminder_id: str
    level: str
    success: bool
    skipped: bool = False
    message: Optional[str] = None
    channels: List[ChannelResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.kind,
            "reminder_id": self.reminder_id,
            "level": self.level,
            "success": self.success,
            "skipped": self.skipped,
            "channels": [result.to_dict() for result in self.channels],
        }
        if self.message:
            data["message"] = self.message
        return data
