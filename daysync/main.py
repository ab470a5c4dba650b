from __future__ import annotations

import logging
import os
import sys

import uvicorn

from daysync.config_manager import ConfigManager
from daysync.errors import ConfigError
from daysync.ics_proxy import IcsProxy
from daysync.ingestion import CalendarIngestor, FeedFetcher, ProxyFeedFetcher
from daysync.local_store import LocalStore
from daysync.models import AppConfig, resolve_timezone
from daysync.remote_store import RemoteSnapshotStore, SQLiteHandle
from daysync.sync_client import HttpSyncTransport, RemoteStoreTransport, SyncCoordinator, SyncTransport

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger("daysync")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    return logger


def build_coordinator(config: AppConfig) -> SyncCoordinator:
    """Device-side coordinator: HTTP when ``sync.base_url`` is set, else the local remote binding."""
    transport: SyncTransport
    if config.sync.base_url:
        transport = HttpSyncTransport(config.sync)
    elif config.remote.db_path:
        transport = RemoteStoreTransport(RemoteSnapshotStore(SQLiteHandle(config.remote.db_path)), config.server.user_id)
    else:
        raise ConfigError("Neither sync.base_url nor remote.db_path is configured")
    return SyncCoordinator(LocalStore(config.local.db_path), transport)


def build_ingestor(config: AppConfig) -> CalendarIngestor:
    direct = IcsProxy(config.proxy)
    fetcher: FeedFetcher = direct
    if config.sync.base_url:
        fetcher = ProxyFeedFetcher(
            f"{config.sync.base_url.rstrip('/')}/ics-proxy",
            timeout_seconds=config.sync.timeout_seconds,
            password=config.sync.password,
            fallback=direct,
        )
    return CalendarIngestor(fetcher, resolve_timezone(config.calendar.timezone))


def main() -> None:
    config_path = os.getenv("DAYSYNC_CONFIG_PATH", "config.yaml")
    manager = ConfigManager(config_path)
    config = manager.load()
    configure_logging(config.logging.level)
    logger.info("Configuration loaded from %s: %s", config_path, manager.masked())
    host = os.getenv("DAYSYNC_HOST", "0.0.0.0")
    port = int(os.getenv("DAYSYNC_PORT", "8080"))
    uvicorn.run("daysync.web_app:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
