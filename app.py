# app.py
from flask import Flask, request, jsonify, abort
import calendar
import logging
import os, uuid, secrets
from datetime import datetime, timedelta, timezone
from functools import wraps
from flask_login import (
    LoginManager,
    UserMixin,
    login_user,
    logout_user,
    current_user,
    login_required,
)
from typing import Any, Dict, List, Optional

import pytz
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    update,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from notifications.channels import is_slack_webhook_locked, send_test_notification
from notifications.config import (
    BOOLEAN_SETTING_FIELDS,
    DEAL_REMINDER_TYPES,
    DEFAULT_DEAL_REMINDER_TYPE,
    DEFAULT_NOTIFICATION_SETTINGS,
    LEVELS_BY_KEY,
    NOTIFICATION_LEVELS,
    VALID_CHANNELS as NOTIFICATION_CHANNELS,
    VALID_FREQUENCIES,
)

LOGGER = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.getenv("SECRET_KEY", "dev-only-key")
app.config.update(
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("FLASK_ENV") == "production",
)

login_manager = LoginManager()
login_manager.init_app(app)

DEBUG = os.getenv("FLASK_ENV") != "production"

APP_MODE = os.environ.get("APP_MODE", "prod").lower()
DEMO = APP_MODE == "demo"
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.environ.get("DATA_DIR", BASE_DIR)

os.makedirs(DATA_DIR, exist_ok=True)


def data_path(name: str) -> str:
    return os.path.join(DATA_DIR, name)

# ------------------------------- Paths / Config -------------------------------
DATABASE_URL = os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URI") or f"sqlite:///{data_path('crm.db')}"
DEFAULT_APP_PASSWORD = "sesame"

engine_kwargs: dict[str, Any] = {"future": True}
if str(DATABASE_URL).startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}
    if DATABASE_URL in {"sqlite://", "sqlite:///:memory:"}:
        engine_kwargs["poolclass"] = StaticPool
    pool_pre_ping = False
else:
    pool_pre_ping = True
engine = create_engine(DATABASE_URL, pool_pre_ping=pool_pre_ping, **engine_kwargs)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
Base = declarative_base()


def utc_now() -> datetime:
    """Naive UTC timestamp; every stored datetime uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return uuid.uuid4().hex


class TeamMemberModel(Base):
    __tablename__ = "team_members"
    id = Column(String(32), primary_key=True, default=_new_id)
    name = Column(String(120), nullable=False)
    email = Column(String(255))
    color = Column(String(20))
    notify_on_reminder = Column(Boolean, default=True, nullable=False)
    timezone = Column(String(64))
    telegram_chat_id = Column(String(64))
    slack_user_id = Column(String(64))
    created_at = Column(DateTime, default=utc_now, nullable=False)

    leads = relationship("LeadModel", back_populates="assignee")
    deals = relationship("DealModel", back_populates="assignee")


class LeadModel(Base):
    __tablename__ = "leads"
    id = Column(String(32), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    company = Column(String(255))
    email = Column(String(255))
    stage = Column(String(32), default="NEW", nullable=False)
    archived = Column(Boolean, default=False, nullable=False)
    assignee_id = Column(String(32), ForeignKey("team_members.id", ondelete="SET NULL"))
    created_at = Column(DateTime, default=utc_now, nullable=False)

    assignee = relationship("TeamMemberModel", back_populates="leads")
    reminders = relationship("ReminderModel", back_populates="lead", cascade="all, delete-orphan")


class DealModel(Base):
    __tablename__ = "deals"
    id = Column(String(32), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    status = Column(String(32), default="ACTIVE", nullable=False)
    assignee_id = Column(String(32), ForeignKey("team_members.id", ondelete="SET NULL"))
    created_at = Column(DateTime, default=utc_now, nullable=False)

    assignee = relationship("TeamMemberModel", back_populates="deals")
    reminders = relationship("DealReminderModel", back_populates="deal", cascade="all, delete-orphan")


class ReminderModel(Base):
    __tablename__ = "reminders"
    id = Column(String(32), primary_key=True, default=_new_id)
    lead_id = Column(String(32), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False)
    due_at = Column(DateTime, nullable=False, index=True)
    note = Column(Text)
    completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    notified_1day = Column(Boolean, default=False, nullable=False)
    notified_1hour = Column(Boolean, default=False, nullable=False)
    notified_30min = Column(Boolean, default=False, nullable=False)
    notified_15min = Column(Boolean, default=False, nullable=False)

    lead = relationship("LeadModel", back_populates="reminders")


class DealReminderModel(Base):
    __tablename__ = "deal_reminders"
    id = Column(String(32), primary_key=True, default=_new_id)
    deal_id = Column(String(32), ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    due_at = Column(DateTime, nullable=False, index=True)
    note = Column(Text)
    type = Column(String(20), default=DEFAULT_DEAL_REMINDER_TYPE, nullable=False)
    recurring = Column(Boolean, default=False, nullable=False)
    frequency = Column(String(20))
    completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    notified_1day = Column(Boolean, default=False, nullable=False)
    notified_1hour = Column(Boolean, default=False, nullable=False)
    notified_30min = Column(Boolean, default=False, nullable=False)
    notified_15min = Column(Boolean, default=False, nullable=False)

    deal = relationship("DealModel", back_populates="reminders")


class NotificationSettingsModel(Base):
    __tablename__ = "notification_settings"
    id = Column(Integer, primary_key=True)
    email_enabled = Column(Boolean, default=False, nullable=False)
    email_address = Column(String(255))
    telegram_enabled = Column(Boolean, default=False, nullable=False)
    telegram_bot_token = Column(String(255))
    telegram_chat_id = Column(String(64))
    slack_enabled = Column(Boolean, default=False, nullable=False)
    slack_webhook_url = Column(String(500))
    slack_channel = Column(String(120))
    notify_1day_before = Column(Boolean, default=False, nullable=False)
    notify_1hour_before = Column(Boolean, default=False, nullable=False)
    notify_30min_before = Column(Boolean, default=True, nullable=False)
    notify_15min_before = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)


REMINDER_MODELS = {"lead": ReminderModel, "deal": DealReminderModel}
REMINDER_SCOPES = ("open", "today", "upcoming", "overdue")
UPCOMING_REMINDER_LIMIT = 20

SETTINGS_FIELDS = tuple(DEFAULT_NOTIFICATION_SETTINGS)
MEMBER_PREFERENCE_FIELDS = ("email", "notify_on_reminder", "timezone", "telegram_chat_id", "slack_user_id")


# ------------------------------- Auth model -------------------------------
class AppUser(UserMixin):
    def __init__(self, member_id: str, name: str | None = None):
        self.id = member_id
        self.member_id = member_id
        self.name = name or ""

    @classmethod
    def from_record(cls, record: dict):
        member_id = record.get("id")
        if not member_id:
            raise ValueError("Team member record missing id")
        return cls(member_id=member_id, name=record.get("name"))


def demo_guard(fn):
    @wraps(fn)
    def _w(*args, **kwargs):
        if DEMO and request.method in {"POST", "PUT", "PATCH", "DELETE"}:
            return ("Demo mode: mutations are disabled.", 403)
        return fn(*args, **kwargs)
    return _w


# ------------------------------- Utilities -------------------------------
def _norm_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def parse_dt_any(s: Any) -> datetime | None:
    """Return a naive UTC datetime for common ISO-like strings or None."""
    if isinstance(s, datetime):
        dt = s
    else:
        if not s:
            return None
        text = str(s).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"

        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            for fmt in ("%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M", "%Y-%m-%d %H:%M:%S"):
                try:
                    dt = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            else:
                return None

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def iso_utc(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.replace(microsecond=0).isoformat() + "Z"


def add_months(current: datetime, months: int) -> datetime:
    month = current.month - 1 + months
    year = current.year + month // 12
    month = month % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return current.replace(year=year, month=month, day=min(current.day, last_day))


def next_recurring_due_at(current: datetime, frequency: Optional[str]) -> datetime:
    freq = (frequency or "").strip().lower()
    if freq == "weekly":
        return current + timedelta(weeks=1)
    if freq == "quarterly":
        return add_months(current, 3)
    if freq == "annually":
        return add_months(current, 12)
    return add_months(current, 1)


def normalize_frequency(value: Any) -> Optional[str]:
    freq = _norm_text(value)
    if freq is None:
        return None
    freq = freq.lower()
    if freq not in VALID_FREQUENCIES:
        raise ValueError(f"Invalid frequency: {value}")
    return freq


def normalize_deal_reminder_type(value: Any) -> str:
    kind = (_norm_text(value) or DEFAULT_DEAL_REMINDER_TYPE).upper()
    if kind not in DEAL_REMINDER_TYPES:
        raise ValueError(f"Invalid reminder type: {value}")
    return kind


# ------------------------------- Serialisation -------------------------------
def _settings_to_dict(model: NotificationSettingsModel) -> Dict[str, Any]:
    data = {name: getattr(model, name) for name in SETTINGS_FIELDS}
    data["id"] = model.id
    data["updated_at"] = model.updated_at
    return data


def _member_to_dict(model: Optional[TeamMemberModel]) -> Optional[Dict[str, Any]]:
    if model is None:
        return None
    return {
        "id": model.id,
        "name": model.name,
        "email": model.email,
        "color": model.color,
        "notify_on_reminder": bool(model.notify_on_reminder),
        "timezone": model.timezone,
        "telegram_chat_id": model.telegram_chat_id,
        "slack_user_id": model.slack_user_id,
    }


def _notified_levels(model) -> List[str]:
    return [level.key for level in NOTIFICATION_LEVELS if getattr(model, level.flag_field)]


def _reminder_to_dict(model, kind: str) -> Dict[str, Any]:
    if kind == "lead":
        owner = model.lead
        data: Dict[str, Any] = {"lead_id": model.lead_id}
    else:
        owner = model.deal
        data = {
            "deal_id": model.deal_id,
            "reminder_type": model.type,
            "recurring": bool(model.recurring),
            "frequency": model.frequency,
        }
    data.update(
        {
            "type": kind,
            "id": model.id,
            "subject_name": owner.name if owner else "",
            "due_at": model.due_at,
            "note": model.note,
            "completed": bool(model.completed),
            "completed_at": model.completed_at,
            "notified_levels": _notified_levels(model),
            "assignee": _member_to_dict(owner.assignee) if owner else None,
        }
    )
    return data


def jsonable(record: Dict[str, Any]) -> Dict[str, Any]:
    return {key: iso_utc(value) if isinstance(value, datetime) else value for key, value in record.items()}


# ------------------------------- Notification settings -------------------------------
def ensure_notification_settings() -> Dict[str, Any]:
    """Create the settings row if it does not exist yet. Safe to call repeatedly."""
    with SessionLocal.begin() as session:
        record = session.query(NotificationSettingsModel).order_by(NotificationSettingsModel.id).first()
        if record is None:
            record = NotificationSettingsModel(**DEFAULT_NOTIFICATION_SETTINGS)
            session.add(record)
            session.flush()
            LOGGER.info("Created default notification settings")
        return _settings_to_dict(record)


def get_notification_settings() -> Dict[str, Any]:
    with SessionLocal() as session:
        record = session.query(NotificationSettingsModel).order_by(NotificationSettingsModel.id).first()
        if record is not None:
            return _settings_to_dict(record)
    return ensure_notification_settings()


def update_notification_settings(data: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(data) - set(SETTINGS_FIELDS)
    if unknown:
        raise ValueError(f"Unknown settings fields: {', '.join(sorted(unknown))}")
    if "slack_webhook_url" in data and is_slack_webhook_locked():
        raise ValueError("Slack webhook is configured via SLACK_WEBHOOK_URL and cannot be changed")

    ensure_notification_settings()
    with SessionLocal.begin() as session:
        record = session.query(NotificationSettingsModel).order_by(NotificationSettingsModel.id).first()
        for name, value in data.items():
            if name in BOOLEAN_SETTING_FIELDS:
                setattr(record, name, _as_bool(value))
            else:
                setattr(record, name, _norm_text(value))
        session.flush()
        return _settings_to_dict(record)


def public_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    data = jsonable(settings)
    data["telegram_bot_token_set"] = bool(data.pop("telegram_bot_token", None))
    data["slack_webhook_locked"] = is_slack_webhook_locked()
    if data["slack_webhook_locked"]:
        data["slack_webhook_url"] = None
    return data


# ------------------------------- Team members / leads / deals -------------------------------
def create_team_member(name: str, **fields: Any) -> Dict[str, Any]:
    name = _norm_text(name)
    if not name:
        raise ValueError("Team member name required")
    with SessionLocal.begin() as session:
        member = TeamMemberModel(
            name=name,
            email=_norm_text(fields.get("email")),
            color=_norm_text(fields.get("color")),
            notify_on_reminder=_as_bool(fields.get("notify_on_reminder", True)),
            timezone=_norm_text(fields.get("timezone")),
            telegram_chat_id=_norm_text(fields.get("telegram_chat_id")),
            slack_user_id=_norm_text(fields.get("slack_user_id")),
        )
        session.add(member)
        session.flush()
        return _member_to_dict(member)


def load_team_members() -> List[Dict[str, Any]]:
    with SessionLocal() as session:
        rows = session.query(TeamMemberModel).order_by(TeamMemberModel.name).all()
        return [_member_to_dict(row) for row in rows]


def find_team_member(member_id: str | None) -> Optional[Dict[str, Any]]:
    if not member_id:
        return None
    with SessionLocal() as session:
        return _member_to_dict(session.get(TeamMemberModel, member_id))


def update_team_member_preferences(member_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(data) - set(MEMBER_PREFERENCE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown preference fields: {', '.join(sorted(unknown))}")
    tz_name = _norm_text(data.get("timezone"))
    if tz_name and tz_name not in pytz.all_timezones_set:
        raise ValueError(f"Unknown timezone: {tz_name}")

    with SessionLocal.begin() as session:
        member = session.get(TeamMemberModel, member_id)
        if member is None:
            raise LookupError("Team member not found")
        for name, value in data.items():
            if name == "notify_on_reminder":
                if value is None:
                    raise ValueError("notify_on_reminder must be true or false")
                member.notify_on_reminder = _as_bool(value)
            else:
                setattr(member, name, _norm_text(value))
        session.flush()
        return _member_to_dict(member)


def create_lead(name: str, assignee_id: str | None = None, **fields: Any) -> Dict[str, Any]:
    name = _norm_text(name)
    if not name:
        raise ValueError("Lead name required")
    with SessionLocal.begin() as session:
        lead = LeadModel(
            name=name,
            company=_norm_text(fields.get("company")),
            email=_norm_text(fields.get("email")),
            stage=(_norm_text(fields.get("stage")) or "NEW").upper(),
            archived=_as_bool(fields.get("archived", False)),
            assignee_id=assignee_id,
        )
        session.add(lead)
        session.flush()
        return {"id": lead.id, "name": lead.name, "stage": lead.stage, "assignee_id": lead.assignee_id}


def create_deal(name: str, assignee_id: str | None = None, status: str = "ACTIVE") -> Dict[str, Any]:
    name = _norm_text(name)
    if not name:
        raise ValueError("Deal name required")
    with SessionLocal.begin() as session:
        deal = DealModel(name=name, assignee_id=assignee_id, status=status)
        session.add(deal)
        session.flush()
        return {"id": deal.id, "name": deal.name, "status": deal.status, "assignee_id": deal.assignee_id}


# ------------------------------- Reminders -------------------------------
def _require_due_at(value: Any) -> datetime:
    due_at = parse_dt_any(value)
    if due_at is None:
        raise ValueError("Invalid or missing due_at")
    return due_at


def create_reminder(lead_id: str, due_at: Any, note: Any = None) -> Dict[str, Any]:
    due = _require_due_at(due_at)
    with SessionLocal.begin() as session:
        lead = session.get(LeadModel, lead_id)
        if lead is None:
            raise LookupError("Lead not found")
        reminder = ReminderModel(lead=lead, due_at=due, note=_norm_text(note))
        session.add(reminder)
        session.flush()
        return _reminder_to_dict(reminder, "lead")


def complete_reminder(reminder_id: str) -> Dict[str, Any]:
    with SessionLocal.begin() as session:
        reminder = session.get(ReminderModel, reminder_id)
        if reminder is None:
            raise LookupError("Reminder not found")
        if not reminder.completed:
            reminder.completed = True
            reminder.completed_at = utc_now()
            session.flush()
        return _reminder_to_dict(reminder, "lead")


def snooze_reminder(reminder_id: str, days: int) -> Dict[str, Any]:
    with SessionLocal.begin() as session:
        reminder = session.get(ReminderModel, reminder_id)
        if reminder is None:
            raise LookupError("Reminder not found")
        try:
            reminder.due_at = reminder.due_at + timedelta(days=days)
        except OverflowError:
            raise ValueError(f"Cannot snooze by {days} days")
        session.flush()
        return _reminder_to_dict(reminder, "lead")


def create_deal_reminder(
    deal_id: str,
    due_at: Any,
    note: Any = None,
    reminder_type: Any = None,
    recurring: Any = False,
    frequency: Any = None,
) -> Dict[str, Any]:
    due = _require_due_at(due_at)
    kind = normalize_deal_reminder_type(reminder_type)
    freq = normalize_frequency(frequency)
    with SessionLocal.begin() as session:
        deal = session.get(DealModel, deal_id)
        if deal is None:
            raise LookupError("Deal not found")
        reminder = DealReminderModel(
            deal=deal,
            due_at=due,
            note=_norm_text(note),
            type=kind,
            recurring=_as_bool(recurring),
            frequency=freq,
        )
        session.add(reminder)
        session.flush()
        return _reminder_to_dict(reminder, "deal")


def complete_deal_reminder(reminder_id: str) -> Dict[str, Any]:
    """Complete a deal reminder; a recurring one is rolled forward to a fresh reminder.

    Completing an already completed reminder is a no-op, so a repeated request
    never rolls the series forward twice.
    """
    with SessionLocal.begin() as session:
        reminder = session.get(DealReminderModel, reminder_id)
        if reminder is None:
            raise LookupError("Reminder not found")
        if reminder.completed:
            result = _reminder_to_dict(reminder, "deal")
            result["next"] = None
            return result
        reminder.completed = True
        reminder.completed_at = utc_now()

        next_reminder = None
        if reminder.recurring and reminder.frequency:
            next_reminder = DealReminderModel(
                deal_id=reminder.deal_id,
                due_at=next_recurring_due_at(reminder.due_at, reminder.frequency),
                note=reminder.note,
                type=reminder.type,
                recurring=True,
                frequency=reminder.frequency,
            )
            session.add(next_reminder)
        session.flush()

        result = _reminder_to_dict(reminder, "deal")
        result["next"] = _reminder_to_dict(next_reminder, "deal") if next_reminder else None
        return result


def delete_reminder(kind: str, reminder_id: str) -> None:
    model = REMINDER_MODELS[kind]
    with SessionLocal.begin() as session:
        reminder = session.get(model, reminder_id)
        if reminder is None:
            raise LookupError("Reminder not found")
        session.delete(reminder)


def load_open_reminders() -> List[Dict[str, Any]]:
    with SessionLocal() as session:
        records = []
        for kind, model in REMINDER_MODELS.items():
            rows = session.query(model).filter(model.completed.is_(False)).order_by(model.due_at).all()
            records.extend(_reminder_to_dict(row, kind) for row in rows)
        records.sort(key=lambda item: item["due_at"])
        return records


def load_reminder_view(scope: str, kind: Optional[str] = None, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Open reminders for one dashboard view.

    ``today`` covers the current UTC day, ``upcoming`` the next
    ``UPCOMING_REMINDER_LIMIT`` reminders from now and ``overdue`` everything
    due before now. ``kind`` narrows the view to lead or deal reminders.
    """
    if scope not in REMINDER_SCOPES:
        raise ValueError(f"Unknown reminder scope: {scope}")
    if kind is not None and kind not in REMINDER_MODELS:
        raise ValueError(f"Unknown reminder type: {kind}")
    now = now or utc_now()
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    kinds = [kind] if kind else list(REMINDER_MODELS)

    with SessionLocal() as session:
        records = []
        for name in kinds:
            model = REMINDER_MODELS[name]
            query = session.query(model).filter(model.completed.is_(False))
            if scope == "today":
                query = query.filter(model.due_at >= start_of_day, model.due_at < start_of_day + timedelta(days=1))
            elif scope == "upcoming":
                query = query.filter(model.due_at >= now)
            elif scope == "overdue":
                query = query.filter(model.due_at < now)
            query = query.order_by(model.due_at)
            if scope == "upcoming":
                query = query.limit(UPCOMING_REMINDER_LIMIT)
            rows = query.all()
            records.extend(_reminder_to_dict(row, name) for row in rows)
        records.sort(key=lambda item: item["due_at"])
        if scope == "upcoming":
            records = records[:UPCOMING_REMINDER_LIMIT]
        return records


def load_lead_reminders(lead_id: str) -> List[Dict[str, Any]]:
    """Every reminder of a lead, completed ones included, oldest first."""
    with SessionLocal() as session:
        if session.get(LeadModel, lead_id) is None:
            raise LookupError("Lead not found")
        rows = (
            session.query(ReminderModel)
            .filter(ReminderModel.lead_id == lead_id)
            .order_by(ReminderModel.due_at)
            .all()
        )
        return [_reminder_to_dict(row, "lead") for row in rows]


def load_pending_reminders(since: datetime) -> List[Dict[str, Any]]:
    """Incomplete lead and deal reminders due at or after ``since``."""
    with SessionLocal() as session:
        records = []
        for kind, model in REMINDER_MODELS.items():
            rows = (
                session.query(model)
                .filter(model.completed.is_(False), model.due_at >= since)
                .order_by(model.due_at)
                .all()
            )
            records.extend(_reminder_to_dict(row, kind) for row in rows)
        return records


def mark_reminder_notified(kind: str, reminder_id: str, level: str) -> None:
    model = REMINDER_MODELS[kind]
    flag = LEVELS_BY_KEY[level].flag_field
    with SessionLocal.begin() as session:
        session.execute(update(model).where(model.id == reminder_id).values({flag: True}))
    LOGGER.info("Marked %s reminder %s notified at %s", kind, reminder_id, level)


Base.metadata.create_all(bind=engine)
ensure_notification_settings()


@login_manager.user_loader
def load_logged_in_user(user_id: str):
    record = find_team_member(user_id)
    if record:
        return AppUser.from_record(record)
    return None


def seed_demo_data():
    if not DEMO:
        return
    if load_team_members():
        return

    member = create_team_member("Demo Rep", email="demo@example.com", timezone="America/New_York")
    lead = create_lead("Acme Corp", assignee_id=member["id"], company="Acme")
    deal = create_deal("Acme Advisory", assignee_id=member["id"])
    now = utc_now()
    create_reminder(lead["id"], now + timedelta(minutes=25), "Send the proposal")
    create_deal_reminder(deal["id"], now + timedelta(days=1), "Quarterly token payment", "PAYMENT", True, "quarterly")

seed_demo_data()


@app.get("/healthz")
def healthz():
    return {"ok": True, "mode": APP_MODE}, 200


def _json_payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        abort(400)
    return payload

# ------------------------------- Auth -------------------------------
@app.route("/api/auth", methods=["POST"])
def auth_login():
    payload = request.get_json(silent=True) or {}
    expected = os.getenv("APP_PASSWORD", DEFAULT_APP_PASSWORD)
    password = str(payload.get("password") or "")
    if not secrets.compare_digest(password.encode(), expected.encode()):
        return jsonify({"error": "Invalid password"}), 401
    record = find_team_member(payload.get("member_id"))
    if not record:
        return jsonify({"error": "Team member not found"}), 404
    login_user(AppUser.from_record(record), remember=True)
    return jsonify({"success": True, "name": record["name"]})


@app.get("/api/auth/identity")
def auth_identity():
    if not current_user.is_authenticated:
        return jsonify({"user": None})
    record = find_team_member(current_user.member_id)
    return jsonify({"user": record})


@app.route("/api/auth/logout", methods=["POST"])
@login_required
def auth_logout():
    logout_user()
    return jsonify({"success": True})

# ------------------------------- Cron trigger -------------------------------
def _cron_authorized() -> bool:
    secret = os.getenv("CRON_SECRET")
    if not secret:
        return True
    header = request.headers.get("Authorization", "")
    return secrets.compare_digest(header.encode(), f"Bearer {secret}".encode())


def _debug_snapshot() -> Dict[str, Any]:
    from notifications import collectors

    now = utc_now()
    settings = collectors.load_notification_settings()
    levels = collectors.enabled_levels(settings)
    reminders = collectors.collect_pending_reminders(now)
    jobs = collectors.collect_due_jobs(reminders, levels, now)
    return {
        "debug": True,
        "settings": public_settings(settings),
        "enabled_levels": [level.key for level in levels],
        "pending": [
            {
                "type": reminder.kind,
                "reminder_id": reminder.id,
                "subject_name": reminder.subject_name,
                "due_at": iso_utc(reminder.due_at),
                "notified_levels": sorted(reminder.notified_levels),
            }
            for reminder in reminders
        ],
        "due_now": [
            {"type": job.reminder.kind, "reminder_id": job.reminder.id, "level": job.level, "overdue": job.overdue}
            for job in jobs
        ],
        "timestamp": iso_utc(now),
    }


@app.route("/api/cron/notifications", methods=["GET", "POST"])
def cron_notifications():
    if not _cron_authorized():
        return jsonify({"error": "Unauthorized"}), 401

    from notifications import tasks as notification_tasks

    try:
        if request.args.get("debug", "").lower() == "true":
            return jsonify(_debug_snapshot())
        summary = notification_tasks.process_pending_notifications()
    except Exception as exc:
        LOGGER.exception("Failed to process notifications")
        return jsonify({"error": "Failed to process notifications", "details": str(exc)}), 500

    body = {
        "success": True,
        "processed": summary["processed"],
        "results": summary["results"],
        "timestamp": iso_utc(utc_now()),
    }
    if summary.get("message"):
        body["message"] = summary["message"]
    return jsonify(body)

# ------------------------------- Settings -------------------------------
@app.get("/api/settings/notifications")
@login_required
def notification_settings_view():
    return jsonify(public_settings(get_notification_settings()))


@app.route("/api/settings/notifications", methods=["PATCH", "POST"])
@login_required
@demo_guard
def notification_settings_update():
    payload = _json_payload()
    try:
        updated = update_notification_settings(payload)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify(public_settings(updated))


@app.route("/api/settings/notifications/test/<channel>", methods=["POST"])
@login_required
def notification_settings_test(channel: str):
    if channel not in NOTIFICATION_CHANNELS:
        return jsonify({"success": False, "error": f"Unknown channel: {channel}"}), 400
    return jsonify(send_test_notification(channel, get_notification_settings()))

# ------------------------------- Team members -------------------------------
@app.get("/api/team-members")
def team_members_list():
    members = load_team_members()
    return jsonify([{key: member[key] for key in ("id", "name", "email", "color")} for member in members])


@app.route("/api/team-members/<member_id>", methods=["PATCH"])
@login_required
@demo_guard
def team_member_update(member_id: str):
    payload = _json_payload()
    try:
        member = update_team_member_preferences(member_id, payload)
    except LookupError as exc:
        return jsonify({"error": str(exc)}), 404
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify(member)

# ------------------------------- Reminders -------------------------------
def _reminder_action(action, *args):
    try:
        result = action(*args)
    except LookupError as exc:
        return jsonify({"error": str(exc)}), 404
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    if result is None:
        return jsonify({"success": True})
    return jsonify(_jsonable_reminder(result))


def _jsonable_reminder(record: Dict[str, Any]) -> Dict[str, Any]:
    data = jsonable(record)
    if isinstance(record.get("next"), dict):
        data["next"] = jsonable(record["next"])
    return data


@app.get("/api/reminders")
@login_required
def reminders_list():
    scope = (request.args.get("scope") or "open").strip().lower()
    kind = (request.args.get("type") or "").strip().lower() or None
    try:
        if scope == "open" and kind is None:
            records = load_open_reminders()
        else:
            records = load_reminder_view(scope, kind)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify([_jsonable_reminder(record) for record in records])


@app.get("/api/leads/<lead_id>/reminders")
@login_required
def lead_reminders_list(lead_id: str):
    try:
        records = load_lead_reminders(lead_id)
    except LookupError as exc:
        return jsonify({"error": str(exc)}), 404
    return jsonify([_jsonable_reminder(record) for record in records])


@app.route("/api/leads/<lead_id>/reminders", methods=["POST"])
@login_required
@demo_guard
def lead_reminder_create(lead_id: str):
    payload = _json_payload()
    return _reminder_action(create_reminder, lead_id, payload.get("due_at"), payload.get("note"))


@app.route("/api/reminders/<reminder_id>/complete", methods=["POST"])
@login_required
@demo_guard
def lead_reminder_complete(reminder_id: str):
    return _reminder_action(complete_reminder, reminder_id)


@app.route("/api/reminders/<reminder_id>/snooze", methods=["POST"])
@login_required
@demo_guard
def lead_reminder_snooze(reminder_id: str):
    payload = request.get_json(silent=True) or {}
    try:
        days = int(payload.get("days", 1))
    except (TypeError, ValueError):
        return jsonify({"error": "days must be an integer"}), 400
    return _reminder_action(snooze_reminder, reminder_id, days)


@app.route("/api/reminders/<reminder_id>", methods=["DELETE"])
@login_required
@demo_guard
def lead_reminder_delete(reminder_id: str):
    return _reminder_action(delete_reminder, "lead", reminder_id)


@app.route("/api/deals/<deal_id>/reminders", methods=["POST"])
@login_required
@demo_guard
def deal_reminder_create(deal_id: str):
    payload = _json_payload()
    return _reminder_action(
        create_deal_reminder,
        deal_id,
        payload.get("due_at"),
        payload.get("note"),
        payload.get("type"),
        payload.get("recurring", False),
        payload.get("frequency"),
    )


@app.route("/api/deal-reminders/<reminder_id>/complete", methods=["POST"])
@login_required
@demo_guard
def deal_reminder_complete(reminder_id: str):
    return _reminder_action(complete_deal_reminder, reminder_id)


@app.route("/api/deal-reminders/<reminder_id>", methods=["DELETE"])
@login_required
@demo_guard
def deal_reminder_delete(reminder_id: str):
    return _reminder_action(delete_reminder, "deal", reminder_id)


# ------------- Run -------------
if __name__ == "__main__":
    app.run(debug=DEBUG)
