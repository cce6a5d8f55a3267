from datetime import datetime, timedelta

from notifications import collectors
from notifications.config import LEVELS_BY_KEY, NOTIFICATION_LEVELS
from notifications.models import PendingReminder

NOW = datetime(2025, 3, 1, 12, 0)


def _reminder(due_in, notified=(), completed=False, rid="r1"):
    return PendingReminder(
        kind="lead",
        id=rid,
        subject_name="Acme",
        due_at=NOW + due_in,
        completed=completed,
        notified_levels=frozenset(notified),
    )


def _levels(*keys):
    return [LEVELS_BY_KEY[key] for key in keys]


def _keys(jobs):
    return [(job.reminder.id, job.level, job.overdue) for job in jobs]


def test_enabled_levels_follow_settings():
    settings = {"notify_1day_before": True, "notify_30min_before": True, "notify_15min_before": False}
    assert [level.key for level in collectors.enabled_levels(settings)] == ["1day", "30min"]
    assert collectors.enabled_levels({}) == []


def test_future_reminder_inside_window_fires_once():
    jobs = collectors.collect_due_jobs([_reminder(timedelta(minutes=20))], _levels("30min"), NOW)
    assert _keys(jobs) == [("r1", "30min", False)]


def test_future_reminder_outside_window_is_ignored():
    jobs = collectors.collect_due_jobs([_reminder(timedelta(minutes=45))], _levels("30min", "15min"), NOW)
    assert jobs == []


def test_window_start_is_inclusive():
    jobs = collectors.collect_due_jobs([_reminder(timedelta(minutes=30))], _levels("30min"), NOW)
    assert _keys(jobs) == [("r1", "30min", False)]


def test_already_notified_level_is_skipped():
    jobs = collectors.collect_due_jobs(
        [_reminder(timedelta(minutes=20), notified={"30min"})], _levels("30min"), NOW
    )
    assert jobs == []


def test_overlapping_windows_fire_each_unsent_level():
    jobs = collectors.collect_due_jobs(
        [_reminder(timedelta(minutes=10))], _levels("1hour", "30min", "15min"), NOW
    )
    assert [job.level for job in jobs] == ["1hour", "30min", "15min"]


def test_reminder_due_exactly_now_is_overdue():
    jobs = collectors.collect_due_jobs([_reminder(timedelta(0))], _levels("30min"), NOW)
    assert _keys(jobs) == [("r1", "15min", True)]


def test_overdue_reminder_sends_once_at_shortest_level_even_if_disabled():
    jobs = collectors.collect_due_jobs([_reminder(timedelta(hours=-5))], _levels("1day"), NOW)
    assert _keys(jobs) == [("r1", "15min", True)]


def test_overdue_reminder_with_any_level_sent_is_left_alone():
    reminder = _reminder(timedelta(minutes=-5), notified={"1day"})
    assert collectors.collect_due_jobs([reminder], _levels("1day", "15min"), NOW) == []


def test_completed_and_fully_notified_reminders_are_inert():
    reminders = [
        _reminder(timedelta(minutes=10), completed=True, rid="done"),
        _reminder(timedelta(minutes=10), notified={level.key for level in NOTIFICATION_LEVELS}, rid="full"),
        _reminder(timedelta(minutes=-10), completed=True, rid="done-overdue"),
    ]
    assert collectors.collect_due_jobs(reminders, _levels("1hour", "30min", "15min"), NOW) == []


def test_build_pending_reminder_from_store_record():
    record = {
        "type": "deal",
        "id": "d1",
        "subject_name": "Orbit",
        "due_at": NOW,
        "note": "",
        "completed": False,
        "notified_levels": ["1day"],
        "reminder_type": "PAYMENT",
        "recurring": True,
        "frequency": "weekly",
        "assignee": {"name": "Dana", "notify_on_reminder": True, "slack_user_id": "U1"},
    }
    reminder = collectors.build_pending_reminder(record)
    assert reminder.kind == "deal"
    assert reminder.note is None
    assert reminder.notified_levels == frozenset({"1day"})
    assert reminder.assignee.slack_user_id == "U1"
