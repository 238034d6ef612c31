"""JSON-based config store and environment settings."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from errors import ConfigError
from models import InstalledModel, SessionConfig

logger = logging.getLogger(__name__)

APP_NAME = "vosklive"

ENV_AUDIO_SOURCE = "VOSKLIVE_STT_SOURCE"
ENV_AUDIO_DEVICE = "VOSKLIVE_AUDIO_DEVICE"
ENV_PYTHON_PATH = "VOSKLIVE_PYTHON_PATH"
ENV_WORKER_EXECUTABLE = "VOSKLIVE_WORKER_EXECUTABLE"
ENV_RUN_AS_WORKER = "VOSKLIVE_RUN_AS_WORKER"
ENV_LOG_LEVEL = "VOSKLIVE_LOG_LEVEL"
ENV_DASHSCOPE_API_KEY = "DASHSCOPE_API_KEY"

DEFAULT_CONFIG = SessionConfig()


def default_config_path() -> Path:
    return Path.home() / ".config" / APP_NAME / "config.json"


def default_data_dir() -> Path:
    return Path.home() / ".local" / "share" / APP_NAME


def default_models_root() -> Path:
    return default_data_dir() / "vosk-models"


def env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or default_config_path()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def get_config(self) -> SessionConfig:
        stored = self._read_all().get("config")
        if not isinstance(stored, dict):
            return DEFAULT_CONFIG
        merged = {**DEFAULT_CONFIG.to_dict(), **stored}
        try:
            return SessionConfig.from_dict(merged)
        except ConfigError as exc:
            logger.warning("Stored STT config is invalid, using defaults: %s", exc)
            return DEFAULT_CONFIG

    def set_config(self, **partial: Any) -> SessionConfig:
        with self._lock:
            updated = self.get_config().merged(**partial)
            data = self._read_all()
            data["config"] = updated.to_dict()
            self._write_all(data)
        return updated

    def get_installed_models(self) -> list[InstalledModel]:
        entries = self._read_all().get("installed_models", [])
        models: list[InstalledModel] = []
        for entry in entries if isinstance(entries, list) else []:
            try:
                models.append(InstalledModel.from_dict(entry))
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping malformed installed model entry: %s", exc)
        return models

    def set_installed_models(self, models: list[InstalledModel]) -> None:
        with self._lock:
            data = self._read_all()
            data["installed_models"] = [model.to_dict() for model in models]
            self._write_all(data)

    def get_api_key(self) -> str:
        data = self._read_all()
        return str(data.get("api_key", ""))

    def set_api_key(self, key: str) -> None:
        with self._lock:
            data = self._read_all()
            data["api_key"] = key
            self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
