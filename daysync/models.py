from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any
from urllib.parse import urlsplit
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from daysync.errors import ValidationError


DAY_KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
SCHEDULE_TYPES = ("daily", "weekdays", "weekends", "custom")
THEMES = ("light", "dark", "system")
DEFAULT_CALENDAR_REFRESH_MINUTES = 15
DEFAULT_USER_ID = "default"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat()


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def resolve_timezone(name: str | None) -> tzinfo | None:
    """Return a zone for ``name``; ``None`` means the system local zone."""
    text = str(name or "").strip()
    if not text:
        return None
    try:
        return ZoneInfo(text)
    except ZoneInfoNotFoundError as exc:
        raise ValidationError(f"Unknown timezone: {text}") from exc


def local_datetime(value: datetime, tz: tzinfo | None = None) -> datetime:
    return _ensure_tz(value).astimezone(tz)


def date_key(value: datetime | date, tz: tzinfo | None = None) -> str:
    if isinstance(value, datetime):
        value = local_datetime(value, tz).date()
    return value.isoformat()


def is_date_key(value: Any) -> bool:
    if not isinstance(value, str) or not DAY_KEY_PATTERN.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def from_date_key(key: str) -> date:
    if not is_date_key(key):
        raise ValidationError(f"Invalid day key: {key!r}")
    return date.fromisoformat(key)


def add_days(day: date, amount: int) -> date:
    return day + timedelta(days=amount)


def start_of_day(day: date, tz: tzinfo | None = None) -> datetime:
    if tz is None:
        return datetime.combine(day, time.min).astimezone()
    return datetime.combine(day, time.min, tzinfo=tz)


def build_date_range(center: date, past_days: int, future_days: int) -> list[date]:
    start = add_days(center, -max(0, past_days))
    end = add_days(center, max(0, future_days))
    days: list[date] = []
    cursor = start
    while cursor <= end:
        days.append(cursor)
        cursor = add_days(cursor, 1)
    return days


def _require_text(data: dict[str, Any], key: str, entity: str) -> str:
    value = data.get(key)
    if value is None or not str(value).strip():
        raise ValidationError(f"{entity}.{key} is required")
    return str(value)


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _optional_bool(value: Any) -> bool | None:
    if value is None:
        return None
    return bool(value)


def _require_day_key(data: dict[str, Any], key: str, entity: str) -> str:
    value = data.get(key)
    if not is_date_key(value):
        raise ValidationError(f"{entity}.{key} must be a YYYY-MM-DD day key")
    return str(value)


def _optional_day_key(data: dict[str, Any], key: str, entity: str) -> str | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    if not is_date_key(value):
        raise ValidationError(f"{entity}.{key} must be a YYYY-MM-DD day key")
    return str(value)


def _timestamps(data: dict[str, Any]) -> tuple[str, str]:
    created = data.get("createdAt")
    updated = data.get("updatedAt")
    fallback = now_iso()
    created_text = str(created or updated or fallback)
    updated_text = str(updated or created or fallback)
    return created_text, updated_text


def is_valid_url(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        parts = urlsplit(value.strip())
    except ValueError:
        return False
    return bool(parts.scheme) and bool(parts.netloc)


@dataclass
class Task:
    id: str
    date: str
    title: str
    notes: str | None = None
    link_url: str | None = None
    icon: str | None = None
    order: int | None = None
    completed_at: str | None = None
    origin_date: str | None = None
    dismissed_on_date: str | None = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def done(self) -> bool:
        return bool(self.completed_at)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Task":
        if not isinstance(data, dict):
            raise ValidationError("task must be an object")
        order = data.get("order")
        if order is not None:
            try:
                order = int(order)
            except (TypeError, ValueError) as exc:
                raise ValidationError("task.order must be a number") from exc
        created_at, updated_at = _timestamps(data)
        return cls(
            id=_require_text(data, "id", "task"),
            date=_require_day_key(data, "date", "task"),
            title=str(data.get("title") or ""),
            notes=_optional_text(data.get("notes")),
            link_url=_optional_text(data.get("linkUrl")),
            icon=_optional_text(data.get("icon")),
            order=order,
            completed_at=_optional_text(data.get("completedAt")),
            origin_date=_optional_day_key(data, "originDate", "task"),
            dismissed_on_date=_optional_day_key(data, "dismissedOnDate", "task"),
            created_at=created_at,
            updated_at=updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date,
            "title": self.title,
            "notes": self.notes,
            "linkUrl": self.link_url,
            "icon": self.icon,
            "order": self.order,
            "completedAt": self.completed_at,
            "originDate": self.origin_date,
            "dismissedOnDate": self.dismissed_on_date,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class HabitSchedule:
    type: str = "daily"
    days_of_week: list[int] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "HabitSchedule":
        data = data or {}
        if not isinstance(data, dict):
            raise ValidationError("habit.schedule must be an object")
        schedule_type = str(data.get("type", "daily")).strip().lower()
        if schedule_type not in SCHEDULE_TYPES:
            raise ValidationError(f"habit.schedule.type must be one of {', '.join(SCHEDULE_TYPES)}")
        raw_days = data.get("daysOfWeek")
        days: list[int] | None = None
        if raw_days is not None:
            if not isinstance(raw_days, list):
                raise ValidationError("habit.schedule.daysOfWeek must be a list")
            try:
                days = sorted({int(day) for day in raw_days})
            except (TypeError, ValueError) as exc:
                raise ValidationError("habit.schedule.daysOfWeek must contain integers") from exc
            if any(day < 0 or day > 6 for day in days):
                raise ValidationError("habit.schedule.daysOfWeek values must be within 0-6")
        if schedule_type == "custom" and not days:
            raise ValidationError("custom habit schedules need at least one day of week")
        return cls(type=schedule_type, days_of_week=days)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        if self.days_of_week is not None:
            payload["daysOfWeek"] = list(self.days_of_week)
        return payload


@dataclass
class Habit:
    id: str
    title: str
    schedule: HabitSchedule = field(default_factory=HabitSchedule)
    target_per_day: int = 1
    notes: str | None = None
    icon: str | None = None
    enabled: bool | None = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Habit":
        if not isinstance(data, dict):
            raise ValidationError("habit must be an object")
        try:
            target = int(data.get("targetPerDay", 1))
        except (TypeError, ValueError) as exc:
            raise ValidationError("habit.targetPerDay must be a number") from exc
        if target < 1:
            raise ValidationError("habit.targetPerDay must be at least 1")
        created_at, updated_at = _timestamps(data)
        return cls(
            id=_require_text(data, "id", "habit"),
            title=str(data.get("title") or ""),
            schedule=HabitSchedule.from_dict(data.get("schedule")),
            target_per_day=target,
            notes=_optional_text(data.get("notes")),
            icon=_optional_text(data.get("icon")),
            enabled=_optional_bool(data.get("enabled")),
            created_at=created_at,
            updated_at=updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "notes": self.notes,
            "icon": self.icon,
            "schedule": self.schedule.to_dict(),
            "targetPerDay": self.target_per_day,
            "enabled": self.enabled,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class HabitLog:
    id: str
    habit_id: str
    date: str
    count: int = 0
    updated_at: str = field(default_factory=now_iso)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "HabitLog":
        if not isinstance(data, dict):
            raise ValidationError("habit log must be an object")
        try:
            count = int(data.get("count", 0))
        except (TypeError, ValueError) as exc:
            raise ValidationError("habitLog.count must be a number") from exc
        if count < 0:
            raise ValidationError("habitLog.count must not be negative")
        _, updated_at = _timestamps(data)
        return cls(
            id=_require_text(data, "id", "habitLog"),
            habit_id=_require_text(data, "habitId", "habitLog"),
            date=_require_day_key(data, "date", "habitLog"),
            count=count,
            updated_at=updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "habitId": self.habit_id,
            "date": self.date,
            "count": self.count,
            "updatedAt": self.updated_at,
        }


@dataclass
class CalendarSource:
    id: str
    name: str
    ics_url: str
    enabled: bool = True
    icon: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarSource":
        if not isinstance(data, dict):
            raise ValidationError("calendar source must be an object")
        ics_url = str(data.get("icsUrl") or "").strip()
        if not is_valid_url(ics_url):
            raise ValidationError("calendarSource.icsUrl must be a valid URL")
        return cls(
            id=_require_text(data, "id", "calendarSource"),
            name=str(data.get("name") or ""),
            ics_url=ics_url,
            enabled=bool(data.get("enabled", True)),
            icon=_optional_text(data.get("icon")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "icsUrl": self.ics_url,
            "enabled": self.enabled,
            "icon": self.icon,
        }


@dataclass
class Settings:
    theme: str = "system"
    show_completed_todos: bool = True
    calendar_refresh_minutes: int = DEFAULT_CALENDAR_REFRESH_MINUTES
    suggest_dates: bool | None = None
    suggest_habits: bool | None = None
    suggest_time_intent: bool | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Settings":
        data = data or {}
        if not isinstance(data, dict):
            raise ValidationError("settings must be an object")
        theme = str(data.get("theme") or "system").strip().lower()
        if theme not in THEMES:
            raise ValidationError(f"settings.theme must be one of {', '.join(THEMES)}")
        refresh = data.get("calendarRefreshMinutes")
        try:
            refresh_minutes = int(refresh) if refresh is not None else DEFAULT_CALENDAR_REFRESH_MINUTES
        except (TypeError, ValueError) as exc:
            raise ValidationError("settings.calendarRefreshMinutes must be a number") from exc
        return cls(
            theme=theme,
            show_completed_todos=bool(data.get("showCompletedTodos", True)),
            calendar_refresh_minutes=refresh_minutes,
            suggest_dates=_optional_bool(data.get("suggestDates")),
            suggest_habits=_optional_bool(data.get("suggestHabits")),
            suggest_time_intent=_optional_bool(data.get("suggestTimeIntent")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "theme": self.theme,
            "showCompletedTodos": self.show_completed_todos,
            "calendarRefreshMinutes": self.calendar_refresh_minutes,
            "suggestDates": self.suggest_dates,
            "suggestHabits": self.suggest_habits,
            "suggestTimeIntent": self.suggest_time_intent,
        }


def _list_of(data: dict[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{key} must be an array")
    return value


def _id_list(data: dict[str, Any], key: str) -> list[str]:
    return [str(item) for item in _list_of(data, key) if str(item).strip()]


@dataclass
class Snapshot:
    todos: list[Task] = field(default_factory=list)
    habits: list[Habit] = field(default_factory=list)
    habit_logs: list[HabitLog] = field(default_factory=list)
    calendar_sources: list[CalendarSource] = field(default_factory=list)
    settings: Settings | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Snapshot":
        if not isinstance(data, dict):
            raise ValidationError("snapshot must be an object")
        settings = data.get("settings")
        return cls(
            todos=[Task.from_dict(item) for item in _list_of(data, "todos")],
            habits=[Habit.from_dict(item) for item in _list_of(data, "habits")],
            habit_logs=[HabitLog.from_dict(item) for item in _list_of(data, "habitLogs")],
            calendar_sources=[CalendarSource.from_dict(item) for item in _list_of(data, "calendarSources")],
            settings=Settings.from_dict(settings) if settings else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "todos": [item.to_dict() for item in self.todos],
            "habits": [item.to_dict() for item in self.habits],
            "habitLogs": [item.to_dict() for item in self.habit_logs],
            "calendarSources": [item.to_dict() for item in self.calendar_sources],
            "settings": self.settings.to_dict() if self.settings else None,
        }


@dataclass
class Changeset:
    todos: list[Task] = field(default_factory=list)
    habits: list[Habit] = field(default_factory=list)
    habit_logs: list[HabitLog] = field(default_factory=list)
    calendar_sources: list[CalendarSource] = field(default_factory=list)
    settings: Settings | None = None
    deleted_todos: list[str] = field(default_factory=list)
    deleted_habits: list[str] = field(default_factory=list)
    deleted_habit_logs: list[str] = field(default_factory=list)
    deleted_calendar_sources: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.todos
            or self.habits
            or self.habit_logs
            or self.calendar_sources
            or self.settings is not None
            or self.deleted_todos
            or self.deleted_habits
            or self.deleted_habit_logs
            or self.deleted_calendar_sources
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Changeset":
        if not isinstance(data, dict):
            raise ValidationError("changeset must be an object")
        settings = data.get("settings")
        if settings is not None and not isinstance(settings, dict):
            raise ValidationError("settings must be an object")
        return cls(
            todos=[Task.from_dict(item) for item in _list_of(data, "todos")],
            habits=[Habit.from_dict(item) for item in _list_of(data, "habits")],
            habit_logs=[HabitLog.from_dict(item) for item in _list_of(data, "habitLogs")],
            calendar_sources=[CalendarSource.from_dict(item) for item in _list_of(data, "calendarSources")],
            settings=Settings.from_dict(settings) if settings else None,
            deleted_todos=_id_list(data, "deletedTodos"),
            deleted_habits=_id_list(data, "deletedHabits"),
            deleted_habit_logs=_id_list(data, "deletedHabitLogs"),
            deleted_calendar_sources=_id_list(data, "deletedCalendarSources"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "todos": [item.to_dict() for item in self.todos],
            "habits": [item.to_dict() for item in self.habits],
            "habitLogs": [item.to_dict() for item in self.habit_logs],
            "calendarSources": [item.to_dict() for item in self.calendar_sources],
            "deletedTodos": list(self.deleted_todos),
            "deletedHabits": list(self.deleted_habits),
            "deletedHabitLogs": list(self.deleted_habit_logs),
            "deletedCalendarSources": list(self.deleted_calendar_sources),
        }
        if self.settings is not None:
            payload["settings"] = self.settings.to_dict()
        return payload


@dataclass
class CalendarEvent:
    id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool
    source_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "allDay": self.all_day,
            "sourceId": self.source_id,
        }


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    pulled: int = 0
    pushed: int = 0
    run_at: datetime = field(default_factory=utc_now)

    @property
    def ok(self) -> bool:
        return self.status in {"success", "skipped"}

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "pulled": self.pulled,
            "pushed": self.pushed,
            "run_at": serialize_datetime(self.run_at),
        }


@dataclass
class ServerConfig:
    app_password: str = ""
    user_id: str = DEFAULT_USER_ID

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ServerConfig":
        data = data or {}
        return cls(
            app_password=str(data.get("app_password", "") or "").strip(),
            user_id=str(data.get("user_id", DEFAULT_USER_ID) or "").strip() or DEFAULT_USER_ID,
        )


@dataclass
class RemoteConfig:
    db_path: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RemoteConfig":
        data = data or {}
        return cls(db_path=str(data.get("db_path", "") or "").strip())


@dataclass
class LocalConfig:
    db_path: str = "data/local.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LocalConfig":
        data = data or {}
        return cls(db_path=str(data.get("db_path", "data/local.db") or "").strip() or "data/local.db")


@dataclass
class SyncConfig:
    base_url: str = ""
    password: str = ""
    timeout_seconds: int = 15

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "") or "").strip(),
            password=str(data.get("password", "") or "").strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 15))),
        )


@dataclass
class ProxyConfig:
    max_bytes: int = 5 * 1024 * 1024
    timeout_seconds: float = 10.0
    max_redirects: int = 5
    user_agent: str = "daysync-ics-proxy"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProxyConfig":
        data = data or {}
        return cls(
            max_bytes=max(1, int(data.get("max_bytes", 5 * 1024 * 1024))),
            timeout_seconds=max(0.1, float(data.get("timeout_seconds", 10.0))),
            max_redirects=max(0, int(data.get("max_redirects", 5))),
            user_agent=str(data.get("user_agent", "daysync-ics-proxy") or "").strip() or "daysync-ics-proxy",
        )


@dataclass
class CalendarConfig:
    timezone: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarConfig":
        data = data or {}
        return cls(timezone=str(data.get("timezone", "") or "").strip())


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO") or "").strip().upper() or "INFO")


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    local: LocalConfig = field(default_factory=LocalConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            server=ServerConfig.from_dict(data.get("server")),
            remote=RemoteConfig.from_dict(data.get("remote")),
            local=LocalConfig.from_dict(data.get("local")),
            sync=SyncConfig.from_dict(data.get("sync")),
            proxy=ProxyConfig.from_dict(data.get("proxy")),
            calendar=CalendarConfig.from_dict(data.get("calendar")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()
