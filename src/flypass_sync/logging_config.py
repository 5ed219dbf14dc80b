from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"

# Scheduled syncs append to one file; keep it from growing without bound.
_LOG_MAX_BYTES = 5 * 1024 * 1024
_LOG_BACKUPS = 3

# openpyxl warns once per workbook about the portal's unsupported styles/extensions.
_QUIET_LOGGERS = ("playwright", "openpyxl")


def configure_logging(level: str = "INFO", file_path: Optional[str] = None) -> Optional[Path]:
    """
    Log to stderr and, when `file_path` is set, to a size-rotated file. Returns the log file path.

    Safe to call twice: the CLI logs with defaults until the config file has been read.
    """
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    log_path: Optional[Path] = None
    if file_path:
        log_path = Path(file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(log_path, maxBytes=_LOG_MAX_BYTES, backupCount=_LOG_BACKUPS, encoding="utf-8")
        )

    logging.basicConfig(level=numeric_level, format=LOG_FORMAT, handlers=handlers, force=True)

    noisy_level = os.getenv("NOISY_LOG_LEVEL", "WARNING").upper()
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)
    return log_path
