from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from daysync.errors import ConfigError, ValidationError
from daysync.models import (
    CalendarSource,
    Changeset,
    Habit,
    HabitLog,
    Settings,
    Snapshot,
    Task,
    now_iso,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

BASE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS todos (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL DEFAULT 'default',
    title TEXT,
    notes TEXT,
    date TEXT,
    completedAt TEXT
);

CREATE TABLE IF NOT EXISTS habits (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL DEFAULT 'default',
    title TEXT,
    notes TEXT,
    schedule_json TEXT,
    targetPerDay INTEGER
);

CREATE TABLE IF NOT EXISTS habit_logs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL DEFAULT 'default',
    habitId TEXT,
    date TEXT,
    count INTEGER
);

CREATE TABLE IF NOT EXISTS calendar_sources (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL DEFAULT 'default',
    name TEXT,
    icsUrl TEXT,
    enabled INTEGER
);

CREATE TABLE IF NOT EXISTS settings (
    user_id TEXT PRIMARY KEY,
    theme TEXT,
    showCompletedTodos INTEGER,
    calendarRefreshMinutes INTEGER
);
"""

# Additive migrations, applied in order. Each one may already be present.
MIGRATIONS: tuple[tuple[str, str, str], ...] = (
    ("todos", "linkUrl", "TEXT"),
    ("todos", "icon", "TEXT"),
    ("todos", "originDate", "TEXT"),
    ("todos", "dismissedOnDate", "TEXT"),
    ("todos", "order_num", "INTEGER"),
    ("todos", "createdAt", "TEXT"),
    ("todos", "updatedAt", "TEXT"),
    ("habits", "icon", "TEXT"),
    ("habits", "enabled", "INTEGER"),
    ("habits", "createdAt", "TEXT"),
    ("habits", "updatedAt", "TEXT"),
    ("habit_logs", "updatedAt", "TEXT"),
    ("calendar_sources", "icon", "TEXT"),
    ("calendar_sources", "updatedAt", "TEXT"),
    ("settings", "suggestDates", "INTEGER"),
    ("settings", "suggestHabits", "INTEGER"),
    ("settings", "suggestTimeIntent", "INTEGER"),
)

# wire field -> column, per table
PROJECTIONS: dict[str, tuple[tuple[str, str], ...]] = {
    "todos": (
        ("id", "id"),
        ("title", "title"),
        ("notes", "notes"),
        ("linkUrl", "linkUrl"),
        ("icon", "icon"),
        ("date", "date"),
        ("completedAt", "completedAt"),
        ("originDate", "originDate"),
        ("dismissedOnDate", "dismissedOnDate"),
        ("order", "order_num"),
        ("createdAt", "createdAt"),
        ("updatedAt", "updatedAt"),
    ),
    "habits": (
        ("id", "id"),
        ("title", "title"),
        ("notes", "notes"),
        ("icon", "icon"),
        ("scheduleJson", "schedule_json"),
        ("targetPerDay", "targetPerDay"),
        ("enabled", "enabled"),
        ("createdAt", "createdAt"),
        ("updatedAt", "updatedAt"),
    ),
    "habit_logs": (
        ("id", "id"),
        ("habitId", "habitId"),
        ("date", "date"),
        ("count", "count"),
        ("updatedAt", "updatedAt"),
    ),
    "calendar_sources": (
        ("id", "id"),
        ("name", "name"),
        ("icsUrl", "icsUrl"),
        ("enabled", "enabled"),
        ("icon", "icon"),
    ),
    "settings": (
        ("theme", "theme"),
        ("showCompletedTodos", "showCompletedTodos"),
        ("calendarRefreshMinutes", "calendarRefreshMinutes"),
        ("suggestDates", "suggestDates"),
        ("suggestHabits", "suggestHabits"),
        ("suggestTimeIntent", "suggestTimeIntent"),
    ),
}

TABLES = tuple(PROJECTIONS)


def _bool_column(value: bool | None) -> int | None:
    if value is None:
        return None
    return 1 if value else 0


def _bool_value(value: Any) -> bool | None:
    if value is None:
        return None
    return bool(value)


def _backfill_timestamps(row: dict[str, Any], fields: tuple[str, ...]) -> None:
    created = row.get("createdAt")
    updated = row.get("updatedAt")
    fallback = None
    if not created and not updated:
        fallback = now_iso()
    if "createdAt" in fields:
        row["createdAt"] = created or updated or fallback
    if "updatedAt" in fields:
        row["updatedAt"] = updated or created or fallback


class SQLiteHandle:
    """Process-wide binding to the remote relational database."""

    def __init__(self, db_path: str | Path, *, timeout_seconds: float = 5.0) -> None:
        text = str(db_path or "").strip()
        if not text:
            raise ConfigError("Missing database binding")
        self.db_path = Path(text)
        self.timeout_seconds = timeout_seconds
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout_seconds, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()


class RemoteSnapshotStore:
    """Tenant-scoped snapshot store that tolerates older schema versions.

    The set of columns actually present is probed once (after running the
    additive migrations) and cached; queries project only those columns. If
    a query still hits an operational error the cache is dropped, the probe
    re-runs once, and the query is retried before the error propagates.
    """

    def __init__(self, handle: SQLiteHandle) -> None:
        self.handle = handle
        self._lock = threading.RLock()
        self._columns: dict[str, set[str]] | None = None

    # -- schema capability ----------------------------------------------

    def _run_migrations(self, conn: sqlite3.Connection) -> int:
        applied = 0
        for table, column, column_type in MIGRATIONS:
            try:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")  # nosec B608
                applied += 1
            except sqlite3.OperationalError as exc:
                if "duplicate column" in str(exc).lower():
                    continue
                logger.warning("Migration %s.%s skipped: %s", table, column, exc)
        return applied

    def _probe(self) -> dict[str, set[str]]:
        with self.handle.connect() as conn:
            conn.executescript(BASE_SCHEMA_SQL)
            applied = self._run_migrations(conn)
            columns: dict[str, set[str]] = {}
            for table in TABLES:
                rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
                columns[table] = {str(row["name"]) for row in rows}
        if applied:
            logger.info("Remote store schema upgraded with %d column(s)", applied)
        return columns

    def columns(self) -> dict[str, set[str]]:
        with self._lock:
            if self._columns is None:
                self._columns = self._probe()
            return self._columns

    def invalidate_schema(self) -> None:
        with self._lock:
            self._columns = None

    def is_current_schema(self) -> bool:
        available = self.columns()
        return all(column in available.get(table, set()) for table, column, _ in MIGRATIONS)

    def _with_retry(self, operation: Callable[[], T]) -> T:
        self.columns()
        try:
            return operation()
        except sqlite3.OperationalError as exc:
            logger.warning("Remote store query failed (%s); re-probing schema and retrying once", exc)
            self.invalidate_schema()
            self.columns()
            return operation()

    # -- reads -----------------------------------------------------------

    def _select(
        self,
        conn: sqlite3.Connection,
        table: str,
        user_id: str,
        since: str | None,
    ) -> list[dict[str, Any]]:
        available = self.columns()[table]
        projection = [(field, column) for field, column in PROJECTIONS[table] if column in available]
        select_sql = ", ".join(f'{column} AS "{field}"' for field, column in projection)
        clauses: list[str] = []
        params: list[Any] = []
        if "user_id" in available:
            clauses.append("user_id = ?")
            params.append(user_id)
        if since and "updatedAt" in available:
            if "createdAt" in available:
                clauses.append(
                    "((updatedAt IS NULL AND createdAt IS NULL) OR COALESCE(updatedAt, createdAt) > ?)"
                )
            else:
                clauses.append("(updatedAt IS NULL OR updatedAt > ?)")
            params.append(since)
        where_sql = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = conn.execute(f"SELECT {select_sql} FROM {table}{where_sql}", params).fetchall()  # nosec B608
        fields = tuple(field for field, _ in PROJECTIONS[table])
        output: list[dict[str, Any]] = []
        for row in rows:
            item = {field: None for field in fields}
            item.update(dict(row))
            _backfill_timestamps(item, fields)
            output.append(item)
        return output

    @staticmethod
    def _habit_from_row(row: dict[str, Any]) -> Habit:
        raw_schedule = row.pop("scheduleJson", None)
        try:
            schedule = json.loads(raw_schedule) if raw_schedule else {}
        except ValueError:
            logger.warning("Habit %s has unreadable schedule_json; treating as daily", row.get("id"))
            schedule = {}
        row["schedule"] = schedule or {"type": "daily"}
        row["enabled"] = _bool_value(row.get("enabled"))
        if row.get("targetPerDay") is None:
            row["targetPerDay"] = 1
        return Habit.from_dict(row)

    @staticmethod
    def _build_rows(rows: list[dict[str, Any]], factory: Callable[[dict[str, Any]], T], kind: str) -> list[T]:
        """Validate stored rows, skipping any that no longer satisfy the entity rules."""
        built: list[T] = []
        for row in rows:
            row_id = row.get("id")
            try:
                built.append(factory(row))
            except ValidationError as exc:
                logger.warning("Skipping invalid %s row %s: %s", kind, row_id, exc.message)
        return built

    @staticmethod
    def _settings_from_row(row: dict[str, Any]) -> Settings | None:
        try:
            return Settings.from_dict({key: value for key, value in row.items() if value is not None})
        except ValidationError as exc:
            logger.warning("Ignoring invalid settings row: %s", exc.message)
            return None

    def read_snapshot(self, user_id: str, since: str | None = None) -> Snapshot:
        def _read() -> Snapshot:
            with self.handle.connect() as conn:
                todos = self._select(conn, "todos", user_id, since)
                habits = self._select(conn, "habits", user_id, since)
                logs = self._select(conn, "habit_logs", user_id, since)
                sources = self._select(conn, "calendar_sources", user_id, since)
                settings_rows = self._select(conn, "settings", user_id, None)
            for source in sources:
                source["enabled"] = bool(source.get("enabled"))
            return Snapshot(
                todos=self._build_rows(todos, Task.from_dict, "todo"),
                habits=self._build_rows(habits, self._habit_from_row, "habit"),
                habit_logs=self._build_rows(logs, HabitLog.from_dict, "habit log"),
                calendar_sources=self._build_rows(sources, CalendarSource.from_dict, "calendar source"),
                settings=self._settings_from_row(settings_rows[0]) if settings_rows else None,
            )

        return self._with_retry(_read)

    # -- writes ----------------------------------------------------------

    @staticmethod
    def _upsert_todo(conn: sqlite3.Connection, user_id: str, todo: Task) -> None:
        conn.execute(
            """
            INSERT INTO todos (id, title, notes, linkUrl, icon, date, completedAt, originDate,
                               dismissedOnDate, order_num, createdAt, updatedAt, user_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                notes = excluded.notes,
                linkUrl = excluded.linkUrl,
                icon = excluded.icon,
                date = excluded.date,
                completedAt = excluded.completedAt,
                originDate = excluded.originDate,
                dismissedOnDate = excluded.dismissedOnDate,
                order_num = excluded.order_num,
                createdAt = excluded.createdAt,
                updatedAt = excluded.updatedAt,
                user_id = excluded.user_id
            """,
            (
                todo.id,
                todo.title,
                todo.notes,
                todo.link_url,
                todo.icon,
                todo.date,
                todo.completed_at,
                todo.origin_date,
                todo.dismissed_on_date,
                todo.order,
                todo.created_at,
                todo.updated_at,
                user_id,
            ),
        )

    @staticmethod
    def _upsert_habit(conn: sqlite3.Connection, user_id: str, habit: Habit) -> None:
        conn.execute(
            """
            INSERT INTO habits (id, title, notes, icon, schedule_json, targetPerDay, enabled,
                                createdAt, updatedAt, user_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                notes = excluded.notes,
                icon = excluded.icon,
                schedule_json = excluded.schedule_json,
                targetPerDay = excluded.targetPerDay,
                enabled = excluded.enabled,
                createdAt = excluded.createdAt,
                updatedAt = excluded.updatedAt,
                user_id = excluded.user_id
            """,
            (
                habit.id,
                habit.title,
                habit.notes,
                habit.icon,
                json.dumps(habit.schedule.to_dict()),
                habit.target_per_day,
                _bool_column(habit.enabled),
                habit.created_at,
                habit.updated_at,
                user_id,
            ),
        )

    @staticmethod
    def _upsert_habit_log(conn: sqlite3.Connection, user_id: str, log: HabitLog) -> None:
        # Keyed by id only: callers resolve an existing (habitId, date) log id first.
        conn.execute(
            """
            INSERT INTO habit_logs (id, habitId, date, count, updatedAt, user_id)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                habitId = excluded.habitId,
                date = excluded.date,
                count = excluded.count,
                updatedAt = excluded.updatedAt,
                user_id = excluded.user_id
            """,
            (log.id, log.habit_id, log.date, log.count, log.updated_at, user_id),
        )

    @staticmethod
    def _upsert_calendar_source(conn: sqlite3.Connection, user_id: str, source: CalendarSource) -> None:
        conn.execute(
            """
            INSERT INTO calendar_sources (id, name, icsUrl, enabled, icon, updatedAt, user_id)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                icsUrl = excluded.icsUrl,
                enabled = excluded.enabled,
                icon = excluded.icon,
                updatedAt = excluded.updatedAt,
                user_id = excluded.user_id
            """,
            (source.id, source.name, source.ics_url, 1 if source.enabled else 0, source.icon, now_iso(), user_id),
        )

    @staticmethod
    def _upsert_settings(conn: sqlite3.Connection, user_id: str, settings: Settings) -> None:
        conn.execute(
            """
            INSERT INTO settings (user_id, theme, showCompletedTodos, calendarRefreshMinutes,
                                  suggestDates, suggestHabits, suggestTimeIntent)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                theme = excluded.theme,
                showCompletedTodos = excluded.showCompletedTodos,
                calendarRefreshMinutes = excluded.calendarRefreshMinutes,
                suggestDates = excluded.suggestDates,
                suggestHabits = excluded.suggestHabits,
                suggestTimeIntent = excluded.suggestTimeIntent
            """,
            (
                user_id,
                settings.theme,
                1 if settings.show_completed_todos else 0,
                settings.calendar_refresh_minutes,
                _bool_column(settings.suggest_dates),
                _bool_column(settings.suggest_habits),
                _bool_column(settings.suggest_time_intent),
            ),
        )

    @staticmethod
    def _delete_ids(conn: sqlite3.Connection, table: str, user_id: str, ids: list[str]) -> int:
        deleted = 0
        for entity_id in ids:
            cursor = conn.execute(
                f"DELETE FROM {table} WHERE id = ? AND user_id = ?",  # nosec B608 - fixed table names
                (entity_id, user_id),
            )
            deleted += max(0, int(cursor.rowcount))
        return deleted

    def apply_changeset(self, user_id: str, changeset: Changeset) -> dict[str, int]:
        """Upsert then delete, in one transaction. Returns per-operation counts."""

        def _apply() -> dict[str, int]:
            with self.handle.connect() as conn:
                for todo in changeset.todos:
                    self._upsert_todo(conn, user_id, todo)
                for habit in changeset.habits:
                    self._upsert_habit(conn, user_id, habit)
                for log in changeset.habit_logs:
                    self._upsert_habit_log(conn, user_id, log)
                for source in changeset.calendar_sources:
                    self._upsert_calendar_source(conn, user_id, source)
                if changeset.settings is not None:
                    self._upsert_settings(conn, user_id, changeset.settings)
                deleted = (
                    self._delete_ids(conn, "todos", user_id, changeset.deleted_todos)
                    + self._delete_ids(conn, "habits", user_id, changeset.deleted_habits)
                    + self._delete_ids(conn, "habit_logs", user_id, changeset.deleted_habit_logs)
                    + self._delete_ids(conn, "calendar_sources", user_id, changeset.deleted_calendar_sources)
                )
            upserted = (
                len(changeset.todos)
                + len(changeset.habits)
                + len(changeset.habit_logs)
                + len(changeset.calendar_sources)
                + (1 if changeset.settings is not None else 0)
            )
            return {"upserted": upserted, "deleted": deleted}

        with self._lock:
            result = self._with_retry(_apply)
        logger.info(
            "Applied changeset for user %s: %d upserted, %d deleted", user_id, result["upserted"], result["deleted"]
        )
        return result

    def health(self) -> bool:
        try:
            with self.handle.connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            logger.warning("Remote store health check failed: %s", exc)
            return False
        return True
