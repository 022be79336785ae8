"""
Logging setup for fleetplan.

- Console output for operators (human-readable, colour unless NO_COLOR)
- Optional JSONL file output, one JSON object per line, so redeploy history
  can be tailed and parsed by tooling

Modules log through ``logging.getLogger(__name__)``; structured details go
in ``extra={"context": {...}}``.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from .config import PlannerSettings

ROOT_LOGGER = "fleetplan"

_NO_COLOR = bool(os.environ.get("NO_COLOR")) or not sys.stdout.isatty()


class Colors:
    """ANSI color codes for terminal output."""

    RESET = "" if _NO_COLOR else "\033[0m"
    DIM = "" if _NO_COLOR else "\033[2m"

    DEBUG = "" if _NO_COLOR else "\033[36m"
    WARNING = "" if _NO_COLOR else "\033[33m"
    ERROR = "" if _NO_COLOR else "\033[31m"
    CRITICAL = "" if _NO_COLOR else "\033[35m"


class JSONLFormatter(logging.Formatter):
    """
    Formats log records as JSON Lines.

    Example output:
    {"timestamp":"2026-01-15T10:30:45.123+00:00","level":"ERROR","logger":"fleetplan.coordinator","message":"Redeploy request undelivered","context":{"services":["auth"]}}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            entry["context"] = context

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.DEBUG,
        logging.WARNING: Colors.WARNING,
        logging.ERROR: Colors.ERROR,
        logging.CRITICAL: Colors.CRITICAL,
    }

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        component = record.name.removeprefix(f"{ROOT_LOGGER}.")

        prefix = f"{Colors.DIM}{timestamp}{Colors.RESET} [{component}]"
        if record.levelno != logging.INFO:
            color = self.LEVEL_COLORS.get(record.levelno, "")
            prefix = f"{prefix} {color}{record.levelname}{Colors.RESET}:"

        message = f"{prefix} {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logging(
    log_dir: Path | str | None = None,
    level: int | str = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> logging.Logger:
    """
    Configure the fleetplan logger.

    Args:
        log_dir: Directory for fleetplan.log (JSONL); console only when None
        level: Minimum log level
        max_bytes: Max size per log file before rotation
        backup_count: Number of backup files to keep

    Returns:
        The configured root fleetplan logger
    """
    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ConsoleFormatter())
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        log_file = directory / "fleetplan.log"
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONLFormatter())
        file_handler.setLevel(level)
        root_logger.addHandler(file_handler)
        root_logger.debug("JSONL log at %s", log_file, extra={"context": {"log_file": str(log_file)}})

    return root_logger


def configure_logging(settings: PlannerSettings) -> logging.Logger:
    """Apply the [fleet.log] section of loaded planner settings."""
    return setup_logging(log_dir=settings.log.directory, level=settings.log.level.upper())
