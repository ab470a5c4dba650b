from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Protocol

import requests

from daysync.errors import DaySyncError, SyncUnavailable
from daysync.local_store import LocalStore
from daysync.models import Changeset, Snapshot, SyncConfig, SyncResult
from daysync.remote_store import RemoteSnapshotStore

logger = logging.getLogger(__name__)

AUTH_COOKIE = "app_auth"


class SyncTransport(Protocol):
    def fetch_snapshot(self, since: str | None = None) -> dict[str, Any]:
        ...

    def send_changeset(self, payload: dict[str, Any]) -> None:
        ...


class HttpSyncTransport:
    """Talks to the ``/sync`` endpoint; every call is bounded by a timeout."""

    def __init__(self, config: SyncConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def _endpoint(self) -> str:
        base = self.config.base_url.rstrip("/")
        if not base:
            raise SyncUnavailable("Sync base_url is not configured")
        if base.endswith("/sync"):
            return base
        return f"{base}/sync"

    def _cookies(self) -> dict[str, str]:
        if not self.config.password:
            return {}
        return {AUTH_COOKIE: self.config.password}

    def fetch_snapshot(self, since: str | None = None) -> dict[str, Any]:
        params = {"since": since} if since else None
        try:
            response = self.session.get(
                self._endpoint(),
                params=params,
                cookies=self._cookies(),
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise SyncUnavailable(f"{type(exc).__name__}: {exc}") from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise SyncUnavailable(f"HTTP {response.status_code}: response is not JSON") from exc
        if not response.ok:
            raise SyncUnavailable(f"HTTP {response.status_code}: {payload}")
        if not isinstance(payload, dict) or "error" in payload:
            raise SyncUnavailable(f"Unexpected sync payload: {str(payload)[:200]}")
        return payload

    def send_changeset(self, payload: dict[str, Any]) -> None:
        try:
            response = self.session.post(
                self._endpoint(),
                json=payload,
                cookies=self._cookies(),
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise SyncUnavailable(f"{type(exc).__name__}: {exc}") from exc
        if not response.ok:
            raise SyncUnavailable(f"HTTP {response.status_code}: {response.text[:300]}")


class RemoteStoreTransport:
    """In-process transport straight onto a :class:`RemoteSnapshotStore`."""

    def __init__(self, store: RemoteSnapshotStore, user_id: str) -> None:
        self.store = store
        self.user_id = user_id

    def fetch_snapshot(self, since: str | None = None) -> dict[str, Any]:
        try:
            return self.store.read_snapshot(self.user_id, since=since).to_dict()
        except sqlite3.Error as exc:
            raise SyncUnavailable(f"{type(exc).__name__}: {exc}") from exc

    def send_changeset(self, payload: dict[str, Any]) -> None:
        try:
            self.store.apply_changeset(self.user_id, Changeset.from_dict(payload))
        except sqlite3.Error as exc:
            raise SyncUnavailable(f"{type(exc).__name__}: {exc}") from exc


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class SyncCoordinator:
    """Pull remote state into the local store and push local changes back.

    ``apply`` is a destructive replace: local edits made while a pull is in
    flight are overwritten by the snapshot. There is no per-field merge.
    """

    def __init__(self, local_store: LocalStore, transport: SyncTransport) -> None:
        self.local_store = local_store
        self.transport = transport
        self._lock = threading.RLock()
        self._session_result: SyncResult | None = None

    @property
    def session_started(self) -> bool:
        return self._session_result is not None

    def pull(self, since: str | None = None) -> Snapshot | None:
        """Fetch the remote snapshot, or ``None`` when replication is unavailable."""
        try:
            payload = self.transport.fetch_snapshot(since)
            return Snapshot.from_dict(payload)
        except DaySyncError as exc:
            logger.warning("Sync pull failed, staying local-only: %s", exc.message)
        except Exception as exc:
            logger.warning("Sync pull failed, staying local-only: %s: %s", type(exc).__name__, exc)
        return None

    def apply(self, snapshot: Snapshot) -> None:
        self.local_store.replace_all(snapshot)

    def push(self, changeset: Changeset) -> bool:
        try:
            self.transport.send_changeset(changeset.to_dict())
        except DaySyncError as exc:
            logger.warning("Sync push failed, changes remain local: %s", exc.message)
            return False
        except Exception as exc:
            logger.warning("Sync push failed, changes remain local: %s: %s", type(exc).__name__, exc)
            return False
        return True

    def start_session(self) -> SyncResult:
        """Pull and apply once per session; later calls return the first outcome."""
        with self._lock:
            if self._session_result is not None:
                return self._session_result
            started_at = datetime.now(timezone.utc)
            snapshot = self.pull()
            if snapshot is None:
                result = SyncResult(
                    status="local-only",
                    message="Remote snapshot unavailable; using local data.",
                    duration_ms=_elapsed_ms(started_at),
                    trigger="session",
                )
            else:
                self.apply(snapshot)
                self.local_store.set_meta("last_pull_at", started_at.isoformat())
                pulled = (
                    len(snapshot.todos)
                    + len(snapshot.habits)
                    + len(snapshot.habit_logs)
                    + len(snapshot.calendar_sources)
                )
                result = SyncResult(
                    status="success",
                    message=f"Applied remote snapshot with {pulled} rows.",
                    duration_ms=_elapsed_ms(started_at),
                    trigger="session",
                    pulled=pulled,
                )
            logger.info("Session sync %s: %s", result.status, result.message)
            self._session_result = result
            return result

    def push_pending(self) -> SyncResult:
        with self._lock:
            started_at = datetime.now(timezone.utc)
            changeset, last_seq = self.local_store.pending_changeset()
            if changeset.is_empty():
                if last_seq:
                    self.local_store.clear_pending(last_seq)
                return SyncResult(
                    status="skipped",
                    message="No pending changes.",
                    duration_ms=_elapsed_ms(started_at),
                    trigger="push",
                )
            pushed = (
                len(changeset.todos)
                + len(changeset.habits)
                + len(changeset.habit_logs)
                + len(changeset.calendar_sources)
                + (1 if changeset.settings is not None else 0)
                + len(changeset.deleted_todos)
                + len(changeset.deleted_habits)
                + len(changeset.deleted_habit_logs)
                + len(changeset.deleted_calendar_sources)
            )
            if not self.push(changeset):
                return SyncResult(
                    status="local-only",
                    message=f"Push failed; {pushed} change(s) kept for retry.",
                    duration_ms=_elapsed_ms(started_at),
                    trigger="push",
                )
            self.local_store.clear_pending(last_seq)
            self.local_store.set_meta("last_push_at", started_at.isoformat())
            return SyncResult(
                status="success",
                message=f"Pushed {pushed} change(s).",
                duration_ms=_elapsed_ms(started_at),
                trigger="push",
                pushed=pushed,
            )
