import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from daysync.errors import ConfigError
from daysync.models import Changeset, Habit, HabitLog, HabitSchedule, Settings, Task
from daysync.remote_store import RemoteSnapshotStore, SQLiteHandle


LEGACY_SCHEMA = """
CREATE TABLE todos (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL DEFAULT 'default',
    title TEXT,
    notes TEXT,
    date TEXT,
    completedAt TEXT
);
CREATE TABLE habits (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL DEFAULT 'default',
    title TEXT,
    notes TEXT,
    schedule_json TEXT,
    targetPerDay INTEGER
);
INSERT INTO todos (id, user_id, title, date) VALUES ('old-1', 'alice', 'Legacy task', '2024-01-01');
INSERT INTO habits (id, user_id, title, schedule_json, targetPerDay)
    VALUES ('h-old', 'alice', 'Legacy habit', '{"type": "weekends"}', NULL);
"""


class RemoteSnapshotStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = Path(self.temp_dir.name) / "remote.db"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _store(self) -> RemoteSnapshotStore:
        return RemoteSnapshotStore(SQLiteHandle(str(self.db_path)))

    def _seed_legacy(self) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            conn.executescript(LEGACY_SCHEMA)
            conn.commit()
        finally:
            conn.close()

    def test_missing_binding(self) -> None:
        with self.assertRaises(ConfigError):
            SQLiteHandle("")

    def test_legacy_schema_is_migrated_and_readable(self) -> None:
        self._seed_legacy()
        store = self._store()
        snapshot = store.read_snapshot("alice")
        self.assertTrue(store.is_current_schema())
        self.assertEqual(len(snapshot.todos), 1)
        task = snapshot.todos[0]
        self.assertEqual(task.title, "Legacy task")
        self.assertIsNone(task.link_url)
        self.assertIsNone(task.origin_date)
        # timestamps backfilled with the same value
        self.assertEqual(task.created_at, task.updated_at)
        habit = snapshot.habits[0]
        self.assertEqual(habit.schedule.type, "weekends")
        self.assertEqual(habit.target_per_day, 1)
        self.assertIsNone(habit.enabled)

    def test_read_projects_only_present_columns(self) -> None:
        self._seed_legacy()
        store = self._store()
        with mock.patch.object(RemoteSnapshotStore, "_run_migrations", return_value=0):
            snapshot = store.read_snapshot("alice")
            self.assertFalse(store.is_current_schema())
        self.assertEqual(snapshot.todos[0].id, "old-1")
        self.assertIsNone(snapshot.todos[0].icon)

    def test_since_filters_by_updated_at(self) -> None:
        store = self._store()
        store.apply_changeset(
            "u1",
            Changeset(
                todos=[
                    Task(id="old", date="2024-05-01", title="old", created_at="2024-05-01T00:00:00+00:00",
                         updated_at="2024-05-01T00:00:00+00:00"),
                    Task(id="new", date="2024-05-03", title="new", created_at="2024-05-01T00:00:00+00:00",
                         updated_at="2024-05-03T00:00:00+00:00"),
                ]
            ),
        )
        snapshot = store.read_snapshot("u1", since="2024-05-02T00:00:00+00:00")
        self.assertEqual([task.id for task in snapshot.todos], ["new"])

    def test_upsert_overwrites_with_null(self) -> None:
        store = self._store()
        task = Task(id="t1", date="2024-05-01", title="x", notes="some notes", link_url="https://example.com")
        store.apply_changeset("u1", Changeset(todos=[task]))
        cleared = Task(id="t1", date="2024-05-01", title="x", notes=None, link_url=None)
        store.apply_changeset("u1", Changeset(todos=[cleared]))
        stored = store.read_snapshot("u1").todos[0]
        self.assertIsNone(stored.notes)
        self.assertIsNone(stored.link_url)

    def test_reads_and_deletes_are_tenant_scoped(self) -> None:
        store = self._store()
        store.apply_changeset("alice", Changeset(todos=[Task(id="a1", date="2024-05-01", title="alice")]))
        store.apply_changeset("bob", Changeset(todos=[Task(id="b1", date="2024-05-01", title="bob")]))

        self.assertEqual([task.id for task in store.read_snapshot("alice").todos], ["a1"])

        result = store.apply_changeset("alice", Changeset(deleted_todos=["b1"]))
        self.assertEqual(result["deleted"], 0)
        self.assertEqual([task.id for task in store.read_snapshot("bob").todos], ["b1"])

    def test_deletion_only_changeset(self) -> None:
        store = self._store()
        store.apply_changeset("u1", Changeset(habits=[Habit(id="h1", title="Run")]))
        result = store.apply_changeset("u1", Changeset(deleted_habits=["h1"]))
        self.assertEqual(result, {"upserted": 0, "deleted": 1})
        self.assertEqual(store.read_snapshot("u1").habits, [])

    def test_habit_and_settings_optional_flags_round_trip(self) -> None:
        store = self._store()
        habit = Habit(id="h1", title="Yoga", schedule=HabitSchedule(type="custom", days_of_week=[1, 3]))
        settings = Settings(theme="dark", show_completed_todos=False, suggest_habits=True)
        log = HabitLog(id="l1", habit_id="h1", date="2024-05-01", count=2)
        store.apply_changeset("u1", Changeset(habits=[habit], habit_logs=[log], settings=settings))

        snapshot = store.read_snapshot("u1")
        self.assertIsNone(snapshot.habits[0].enabled)
        self.assertEqual(snapshot.habits[0].schedule.days_of_week, [1, 3])
        self.assertEqual(snapshot.habit_logs[0].count, 2)
        self.assertEqual(snapshot.settings.theme, "dark")
        self.assertFalse(snapshot.settings.show_completed_todos)
        self.assertTrue(snapshot.settings.suggest_habits)
        self.assertIsNone(snapshot.settings.suggest_dates)

    def test_retries_once_after_reprobe(self) -> None:
        store = self._store()
        calls = []

        def flaky() -> str:
            calls.append(1)
            if len(calls) == 1:
                raise sqlite3.OperationalError("no such column: icon")
            return "ok"

        with mock.patch.object(store, "_probe", wraps=store._probe) as probe:
            self.assertEqual(store._with_retry(flaky), "ok")
        self.assertEqual(len(calls), 2)
        self.assertEqual(probe.call_count, 2)

    def test_second_failure_propagates(self) -> None:
        store = self._store()

        def broken() -> None:
            raise sqlite3.OperationalError("disk I/O error")

        with self.assertRaises(sqlite3.OperationalError):
            store._with_retry(broken)

    def _execute(self, sql: str, params: tuple = ()) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute(sql, params)
            conn.commit()
        finally:
            conn.close()

    def test_unknown_theme_in_stored_settings_is_ignored(self) -> None:
        store = self._store()
        store.columns()
        self._execute(
            "INSERT INTO settings (user_id, theme, showCompletedTodos, calendarRefreshMinutes) VALUES (?, ?, ?, ?)",
            ("u1", "sepia", 1, 30),
        )
        with self.assertLogs("daysync.remote_store", level="WARNING") as logs:
            snapshot = store.read_snapshot("u1")
        self.assertIsNone(snapshot.settings)
        self.assertIn("settings", logs.output[0])

    def test_stored_settings_go_through_validation(self) -> None:
        store = self._store()
        store.columns()
        self._execute("INSERT INTO settings (user_id, theme) VALUES (?, ?)", ("u1", "Dark"))
        settings = store.read_snapshot("u1").settings
        self.assertEqual(settings.theme, "dark")
        self.assertTrue(settings.show_completed_todos)

    def test_invalid_rows_are_skipped(self) -> None:
        store = self._store()
        store.apply_changeset("u1", Changeset(todos=[Task(id="good", date="2024-05-01", title="fine")]))
        self._execute("INSERT INTO todos (id, user_id, title, date) VALUES (?, ?, ?, NULL)", ("bad", "u1", "no day"))
        with self.assertLogs("daysync.remote_store", level="WARNING") as logs:
            snapshot = store.read_snapshot("u1")
        self.assertEqual([task.id for task in snapshot.todos], ["good"])
        self.assertIn("bad", logs.output[0])

    def test_health(self) -> None:
        self.assertTrue(self._store().health())


if __name__ == "__main__":
    unittest.main()
