from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from daysync.models import AppConfig, default_app_config


ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "DAYSYNC_APP_PASSWORD": ("server", "app_password"),
    "DAYSYNC_USER_ID": ("server", "user_id"),
    "DAYSYNC_REMOTE_DB": ("remote", "db_path"),
    "DAYSYNC_LOCAL_DB": ("local", "db_path"),
    "DAYSYNC_SYNC_URL": ("sync", "base_url"),
    "DAYSYNC_TIMEZONE": ("calendar", "timezone"),
    "DAYSYNC_LOG_LEVEL": ("logging", "level"),
}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None:
            continue
        overrides.setdefault(section, {})[key] = value
    return overrides


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def _read_file(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def load(self) -> AppConfig:
        """Load the file and layer ``DAYSYNC_*`` environment overrides on top."""
        with self._lock:
            data = self._read_file()
        return AppConfig.from_dict(_deep_merge(data, _env_overrides()))

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                with self.config_path.open("w", encoding="utf-8") as handle:
                    yaml.safe_dump(
                        config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False
                    )
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = AppConfig.from_dict(self._read_file()).to_dict()
            merged = _deep_merge(current, payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return self.load()

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config.get("server", {}).get("app_password"):
            config["server"]["app_password"] = "***"
        if config.get("sync", {}).get("password"):
            config["sync"]["password"] = "***"
        return config
