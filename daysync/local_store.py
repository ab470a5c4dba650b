from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

from daysync.errors import ValidationError
from daysync.models import (
    CalendarSource,
    Changeset,
    Habit,
    HabitLog,
    Settings,
    Snapshot,
    Task,
    is_date_key,
    now_iso,
)

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"
COLLECTIONS = ("todos", "habits", "habit_logs", "calendar_sources", "settings")


def _new_id() -> str:
    return uuid.uuid4().hex


class LocalStore:
    """Per-device store holding the working copy of the five collections.

    Every entity is kept as its JSON wire payload next to the columns its
    secondary indexes need (``todos.date``, ``habit_logs.date`` and
    ``habit_logs(habit_id, date)``). Local writes are also recorded in the
    ``pending_changes`` outbox so they can be pushed later.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS todos (
            id TEXT PRIMARY KEY,
            date TEXT NOT NULL,
            payload_json TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS todos_by_date ON todos(date);

        CREATE TABLE IF NOT EXISTS habits (
            id TEXT PRIMARY KEY,
            payload_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS habit_logs (
            id TEXT PRIMARY KEY,
            habit_id TEXT NOT NULL,
            date TEXT NOT NULL,
            payload_json TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS habit_logs_by_date ON habit_logs(date);
        CREATE INDEX IF NOT EXISTS habit_logs_by_habit_date ON habit_logs(habit_id, date);

        CREATE TABLE IF NOT EXISTS calendar_sources (
            id TEXT PRIMARY KEY,
            payload_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            payload_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS pending_changes (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            collection TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            op TEXT NOT NULL,
            recorded_at TEXT NOT NULL,
            UNIQUE(collection, entity_id)
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # -- row helpers -----------------------------------------------------

    @staticmethod
    def _put_task(conn: sqlite3.Connection, task: Task) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO todos(id, date, payload_json) VALUES (?, ?, ?)",
            (task.id, task.date, json.dumps(task.to_dict(), ensure_ascii=False)),
        )

    @staticmethod
    def _put_habit(conn: sqlite3.Connection, habit: Habit) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO habits(id, payload_json) VALUES (?, ?)",
            (habit.id, json.dumps(habit.to_dict(), ensure_ascii=False)),
        )

    @staticmethod
    def _put_habit_log(conn: sqlite3.Connection, log: HabitLog) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO habit_logs(id, habit_id, date, payload_json) VALUES (?, ?, ?, ?)",
            (log.id, log.habit_id, log.date, json.dumps(log.to_dict(), ensure_ascii=False)),
        )

    @staticmethod
    def _put_calendar_source(conn: sqlite3.Connection, source: CalendarSource) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO calendar_sources(id, payload_json) VALUES (?, ?)",
            (source.id, json.dumps(source.to_dict(), ensure_ascii=False)),
        )

    @staticmethod
    def _put_settings(conn: sqlite3.Connection, settings: Settings) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO settings(key, payload_json) VALUES (?, ?)",
            (SETTINGS_KEY, json.dumps(settings.to_dict(), ensure_ascii=False)),
        )

    @staticmethod
    def _record_change(conn: sqlite3.Connection, collection: str, entity_id: str, op: str) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO pending_changes(collection, entity_id, op, recorded_at)
            VALUES (?, ?, ?, ?)
            """,
            (collection, entity_id, op, now_iso()),
        )

    @staticmethod
    def _load_rows(rows: list[sqlite3.Row], factory: Callable[[dict[str, Any]], Any]) -> list[Any]:
        return [factory(json.loads(row["payload_json"])) for row in rows]

    def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(sql, params).fetchone()
        if row is None:
            return None
        return json.loads(row["payload_json"])

    def _fetch_all(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            with self._connect() as conn:
                return conn.execute(sql, params).fetchall()

    # -- snapshot --------------------------------------------------------

    def replace_all(self, snapshot: Snapshot) -> None:
        """Clear all five collections and bulk insert ``snapshot`` in one transaction.

        The outbox is emptied too: a pull discards every local edit, and a
        pending delete replayed later would remove the row the pull restored.
        """
        with self._lock:
            with self._connect() as conn:
                for table in COLLECTIONS:
                    conn.execute(f"DELETE FROM {table}")  # nosec B608 - fixed table names
                conn.execute("DELETE FROM pending_changes")
                for task in snapshot.todos:
                    self._put_task(conn, task)
                for habit in snapshot.habits:
                    self._put_habit(conn, habit)
                for log in snapshot.habit_logs:
                    self._put_habit_log(conn, log)
                for source in snapshot.calendar_sources:
                    self._put_calendar_source(conn, source)
                if snapshot.settings is not None:
                    self._put_settings(conn, snapshot.settings)
        logger.debug(
            "Local store replaced: %d todos, %d habits, %d habit logs, %d calendar sources",
            len(snapshot.todos),
            len(snapshot.habits),
            len(snapshot.habit_logs),
            len(snapshot.calendar_sources),
        )

    def read_snapshot(self) -> Snapshot:
        with self._lock:
            with self._connect() as conn:
                todos = conn.execute("SELECT payload_json FROM todos ORDER BY date, id").fetchall()
                habits = conn.execute("SELECT payload_json FROM habits ORDER BY id").fetchall()
                logs = conn.execute("SELECT payload_json FROM habit_logs ORDER BY date, id").fetchall()
                sources = conn.execute("SELECT payload_json FROM calendar_sources ORDER BY id").fetchall()
                settings_row = conn.execute(
                    "SELECT payload_json FROM settings WHERE key = ?", (SETTINGS_KEY,)
                ).fetchone()
        return Snapshot(
            todos=self._load_rows(todos, Task.from_dict),
            habits=self._load_rows(habits, Habit.from_dict),
            habit_logs=self._load_rows(logs, HabitLog.from_dict),
            calendar_sources=self._load_rows(sources, CalendarSource.from_dict),
            settings=Settings.from_dict(json.loads(settings_row["payload_json"])) if settings_row else None,
        )

    # -- todos -----------------------------------------------------------

    def list_todos_by_date(self, date: str) -> list[Task]:
        rows = self._fetch_all("SELECT payload_json FROM todos WHERE date = ? ORDER BY id", (date,))
        return self._load_rows(rows, Task.from_dict)

    def get_todo(self, todo_id: str) -> Task | None:
        payload = self._fetch_one("SELECT payload_json FROM todos WHERE id = ?", (todo_id,))
        return Task.from_dict(payload) if payload else None

    def add_todo(self, payload: dict[str, Any]) -> Task:
        now = now_iso()
        task = Task.from_dict({**payload, "id": _new_id(), "createdAt": now, "updatedAt": now})
        with self._lock:
            with self._connect() as conn:
                self._put_task(conn, task)
                self._record_change(conn, "todos", task.id, "upsert")
        return task

    def update_todo(self, todo_id: str, patch: dict[str, Any]) -> Task | None:
        with self._lock:
            existing = self.get_todo(todo_id)
            if existing is None:
                return None
            merged = {**existing.to_dict(), **patch, "id": todo_id, "updatedAt": now_iso()}
            task = Task.from_dict(merged)
            with self._connect() as conn:
                self._put_task(conn, task)
                self._record_change(conn, "todos", task.id, "upsert")
        return task

    def remove_todo(self, todo_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM todos WHERE id = ?", (todo_id,))
                self._record_change(conn, "todos", todo_id, "delete")

    def move_task_to_date(self, todo_id: str, target_date: str) -> Task | None:
        """Move a task, remembering the day it was first planned for."""
        if not is_date_key(target_date):
            raise ValidationError(f"Invalid day key: {target_date!r}")
        with self._lock:
            existing = self.get_todo(todo_id)
            if existing is None:
                return None
            return self.update_todo(
                todo_id,
                {
                    "date": target_date,
                    "originDate": existing.origin_date or existing.date,
                    "dismissedOnDate": None,
                },
            )

    def dismiss_carry_over(self, todo_id: str, today: str) -> Task | None:
        return self.update_todo(todo_id, {"dismissedOnDate": today})

    # -- habits ----------------------------------------------------------

    def list_habits(self) -> list[Habit]:
        return self._load_rows(self._fetch_all("SELECT payload_json FROM habits ORDER BY id"), Habit.from_dict)

    def get_habit(self, habit_id: str) -> Habit | None:
        payload = self._fetch_one("SELECT payload_json FROM habits WHERE id = ?", (habit_id,))
        return Habit.from_dict(payload) if payload else None

    def add_habit(self, payload: dict[str, Any]) -> Habit:
        now = now_iso()
        habit = Habit.from_dict({**payload, "id": _new_id(), "createdAt": now, "updatedAt": now})
        with self._lock:
            with self._connect() as conn:
                self._put_habit(conn, habit)
                self._record_change(conn, "habits", habit.id, "upsert")
        return habit

    def update_habit(self, habit_id: str, patch: dict[str, Any]) -> Habit | None:
        with self._lock:
            existing = self.get_habit(habit_id)
            if existing is None:
                return None
            habit = Habit.from_dict({**existing.to_dict(), **patch, "id": habit_id, "updatedAt": now_iso()})
            with self._connect() as conn:
                self._put_habit(conn, habit)
                self._record_change(conn, "habits", habit.id, "upsert")
        return habit

    def remove_habit(self, habit_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM habits WHERE id = ?", (habit_id,))
                self._record_change(conn, "habits", habit_id, "delete")

    # -- habit logs ------------------------------------------------------

    def list_habit_logs_by_date(self, date: str) -> list[HabitLog]:
        rows = self._fetch_all("SELECT payload_json FROM habit_logs WHERE date = ? ORDER BY id", (date,))
        return self._load_rows(rows, HabitLog.from_dict)

    def get_habit_log_for_date(self, habit_id: str, date: str) -> HabitLog | None:
        payload = self._fetch_one(
            "SELECT payload_json FROM habit_logs WHERE habit_id = ? AND date = ? ORDER BY id LIMIT 1",
            (habit_id, date),
        )
        return HabitLog.from_dict(payload) if payload else None

    def upsert_habit_log(self, habit_id: str, date: str, count: int) -> HabitLog:
        """Write the log for ``(habit_id, date)``, reusing an existing row's id."""
        with self._lock:
            existing = self.get_habit_log_for_date(habit_id, date)
            log = HabitLog.from_dict(
                {
                    "id": existing.id if existing else _new_id(),
                    "habitId": habit_id,
                    "date": date,
                    "count": count,
                    "updatedAt": now_iso(),
                }
            )
            with self._connect() as conn:
                self._put_habit_log(conn, log)
                self._record_change(conn, "habit_logs", log.id, "upsert")
        return log

    def remove_habit_log(self, log_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM habit_logs WHERE id = ?", (log_id,))
                self._record_change(conn, "habit_logs", log_id, "delete")

    # -- calendar sources ------------------------------------------------

    def list_calendar_sources(self) -> list[CalendarSource]:
        rows = self._fetch_all("SELECT payload_json FROM calendar_sources ORDER BY id")
        return self._load_rows(rows, CalendarSource.from_dict)

    def get_calendar_source(self, source_id: str) -> CalendarSource | None:
        payload = self._fetch_one("SELECT payload_json FROM calendar_sources WHERE id = ?", (source_id,))
        return CalendarSource.from_dict(payload) if payload else None

    def add_calendar_source(self, payload: dict[str, Any]) -> CalendarSource:
        source = CalendarSource.from_dict({**payload, "id": _new_id()})
        with self._lock:
            with self._connect() as conn:
                self._put_calendar_source(conn, source)
                self._record_change(conn, "calendar_sources", source.id, "upsert")
        return source

    def update_calendar_source(self, source_id: str, patch: dict[str, Any]) -> CalendarSource | None:
        with self._lock:
            existing = self.get_calendar_source(source_id)
            if existing is None:
                return None
            source = CalendarSource.from_dict({**existing.to_dict(), **patch, "id": source_id})
            with self._connect() as conn:
                self._put_calendar_source(conn, source)
                self._record_change(conn, "calendar_sources", source.id, "upsert")
        return source

    def remove_calendar_source(self, source_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM calendar_sources WHERE id = ?", (source_id,))
                self._record_change(conn, "calendar_sources", source_id, "delete")

    # -- settings --------------------------------------------------------

    def get_settings(self) -> Settings:
        payload = self._fetch_one("SELECT payload_json FROM settings WHERE key = ?", (SETTINGS_KEY,))
        if payload is None:
            return Settings()
        return Settings.from_dict(payload)

    def set_settings(self, settings: Settings) -> None:
        with self._lock:
            with self._connect() as conn:
                self._put_settings(conn, settings)
                self._record_change(conn, "settings", SETTINGS_KEY, "upsert")

    # -- outbox ----------------------------------------------------------

    def pending_changeset(self) -> tuple[Changeset, int]:
        """Build a changeset from the outbox.

        Returns the changeset and the highest outbox sequence it covers, to be
        passed to :meth:`clear_pending` once the push succeeded. Upserts whose
        row no longer exists locally are skipped.
        """
        changeset = Changeset()
        last_seq = 0
        with self._lock:
            with self._connect() as conn:
                pending = conn.execute(
                    "SELECT seq, collection, entity_id, op FROM pending_changes ORDER BY seq"
                ).fetchall()
                for row in pending:
                    last_seq = max(last_seq, int(row["seq"]))
                    collection = str(row["collection"])
                    entity_id = str(row["entity_id"])
                    if row["op"] == "delete":
                        getattr(changeset, f"deleted_{collection}").append(entity_id)
                        continue
                    if collection == "settings":
                        found = conn.execute(
                            "SELECT payload_json FROM settings WHERE key = ?", (SETTINGS_KEY,)
                        ).fetchone()
                        if found is not None:
                            changeset.settings = Settings.from_dict(json.loads(found["payload_json"]))
                        continue
                    found = conn.execute(
                        f"SELECT payload_json FROM {collection} WHERE id = ?",  # nosec B608 - outbox table names
                        (entity_id,),
                    ).fetchone()
                    if found is None:
                        continue
                    factory = {
                        "todos": Task.from_dict,
                        "habits": Habit.from_dict,
                        "habit_logs": HabitLog.from_dict,
                        "calendar_sources": CalendarSource.from_dict,
                    }[collection]
                    getattr(changeset, collection).append(factory(json.loads(found["payload_json"])))
        return changeset, last_seq

    def clear_pending(self, up_to_seq: int) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM pending_changes WHERE seq <= ?", (int(up_to_seq),))
                return int(cursor.rowcount)

    def pending_count(self) -> int:
        rows = self._fetch_all("SELECT COUNT(*) AS total FROM pending_changes")
        return int(rows[0]["total"]) if rows else 0

    # -- meta ------------------------------------------------------------

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), now_iso()),
                )

    def get_meta(self, key: str) -> str | None:
        rows = self._fetch_all("SELECT value FROM app_meta WHERE key = ?", (str(key),))
        if not rows:
            return None
        return str(rows[0]["value"])
