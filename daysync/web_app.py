from __future__ import annotations

import hmac
import json
import logging
import os
import sqlite3
import threading
from datetime import timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from daysync.config_manager import ConfigManager
from daysync.errors import AuthError, ConfigError, DaySyncError, ValidationError
from daysync.ics_proxy import IcsProxy
from daysync.models import AppConfig, Changeset, parse_iso_datetime
from daysync.remote_store import RemoteSnapshotStore, SQLiteHandle
from daysync.sync_client import AUTH_COOKIE

logger = logging.getLogger(__name__)


class HealthStatus(BaseModel):
    ok: bool
    db: bool


class PushAck(BaseModel):
    ok: bool = True


class AppContext:
    def __init__(self, config_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self._lock = threading.Lock()
        self._remote_store: RemoteSnapshotStore | None = None
        self._remote_path = ""

    def config(self) -> AppConfig:
        return self.config_manager.load()

    def remote_store(self, config: AppConfig) -> RemoteSnapshotStore:
        """Return the process-wide store for the configured binding."""
        db_path = config.remote.db_path
        if not db_path:
            raise ConfigError("Missing database binding")
        with self._lock:
            if self._remote_store is None or self._remote_path != db_path:
                self._remote_store = RemoteSnapshotStore(SQLiteHandle(db_path))
                self._remote_path = db_path
            return self._remote_store

    def ics_proxy(self, config: AppConfig) -> IcsProxy:
        return IcsProxy(config.proxy)


def ensure_auth(request: Request, config: AppConfig) -> None:
    password = config.server.app_password
    if not password:
        return
    cookie = request.cookies.get(AUTH_COOKIE) or ""
    if not hmac.compare_digest(cookie.encode("utf-8"), password.encode("utf-8")):
        raise AuthError("credential mismatch")


def _normalize_since(since: str | None) -> str | None:
    """Parse the ``since`` watermark and render it in the UTC form rows are stamped with."""
    if not since:
        return None
    try:
        return parse_iso_datetime(since).astimezone(timezone.utc).isoformat()
    except ValueError as exc:
        raise ValidationError("Invalid since watermark") from exc


def create_app(config_path: str | None = None) -> FastAPI:
    config_path = config_path or os.getenv("DAYSYNC_CONFIG_PATH", "config.yaml")
    context = AppContext(config_path=config_path)

    app = FastAPI(title="daysync", version="0.1.0")
    app.state.context = context

    @app.exception_handler(DaySyncError)
    async def _daysync_error(_request: Request, exc: DaySyncError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s: %s", type(exc).__name__, exc.message)
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    @app.get("/healthz", response_model=HealthStatus)
    def healthz() -> HealthStatus:
        config = app.state.context.config()
        try:
            store = app.state.context.remote_store(config)
        except ConfigError:
            return HealthStatus(ok=True, db=False)
        return HealthStatus(ok=True, db=store.health())

    @app.get("/sync")
    def sync_pull(request: Request, since: str | None = None) -> dict[str, Any]:
        config = app.state.context.config()
        store = app.state.context.remote_store(config)
        ensure_auth(request, config)
        watermark = _normalize_since(since)
        try:
            snapshot = store.read_snapshot(config.server.user_id, since=watermark)
        except sqlite3.Error as exc:
            raise ConfigError(f"Remote store unavailable: {type(exc).__name__}") from exc
        return snapshot.to_dict()

    @app.post("/sync", response_model=PushAck)
    async def sync_push(request: Request) -> PushAck:
        config = app.state.context.config()
        store = app.state.context.remote_store(config)
        ensure_auth(request, config)
        body = await request.body()
        try:
            payload = json.loads(body or b"{}")
        except ValueError as exc:
            raise ValidationError("Invalid JSON") from exc
        changeset = Changeset.from_dict(payload)
        try:
            await run_in_threadpool(store.apply_changeset, config.server.user_id, changeset)
        except sqlite3.Error as exc:
            raise ConfigError(f"Remote store unavailable: {type(exc).__name__}") from exc
        return PushAck(ok=True)

    @app.get("/ics-proxy")
    def ics_proxy(request: Request, url: str | None = None) -> Response:
        config = app.state.context.config()
        ensure_auth(request, config)
        try:
            feed = app.state.context.ics_proxy(config).fetch(url)
        except DaySyncError as exc:
            logger.info("ICS proxy request rejected: %s", exc.message)
            raise
        except Exception:
            logger.exception("ICS proxy failed unexpectedly")
            return JSONResponse({"error": "Unexpected error"}, status_code=500)
        return Response(content=feed.text, media_type=feed.media_type)

    return app
