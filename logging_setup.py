"""Application-wide logging configuration."""

from __future__ import annotations

import logging
import os
from logging import FileHandler
from pathlib import Path
from typing import Any, Dict

from config import ENV_LOG_LEVEL, default_data_dir

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_LOGGING_CONFIGURED = False


def setup_logging(config: Dict[str, Any] | None = None) -> logging.Logger:
    """Initialize application logging once.

    Recognised keys: ``level``, ``console_output``, ``directory`` and
    ``file_name``. ``VOSKLIVE_LOG_LEVEL`` overrides the configured level.
    """
    global _LOGGING_CONFIGURED

    root_logger = logging.getLogger()
    if _LOGGING_CONFIGURED:
        return root_logger

    resolved: Dict[str, Any] = {
        "level": "INFO",
        "console_output": False,
        "directory": str(default_data_dir() / "logs"),
        "file_name": "vosklive.log",
    }
    resolved.update(config or {})

    raw_directory = str(resolved["directory"])
    log_dir = Path(os.path.expanduser(os.path.expandvars(raw_directory)))
    formatter = logging.Formatter(LOG_FORMAT)

    file_handler: FileHandler | None = None
    file_error: OSError | None = None
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = FileHandler(log_dir / resolved["file_name"], encoding="utf-8")
    except OSError as exc:
        file_error = exc

    level_name = str(os.getenv(ENV_LOG_LEVEL) or resolved["level"]).upper()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))

    if file_handler is not None:
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    if resolved["console_output"] or file_handler is None:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    logging.captureWarnings(True)
    _LOGGING_CONFIGURED = True
    if file_error is not None:
        root_logger.warning("Could not open log file in %s: %s", log_dir, file_error)
    root_logger.info("Logging initialized (level=%s, dir=%s)", level_name, log_dir)
    return root_logger
