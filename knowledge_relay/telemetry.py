"""Logging and telemetry for the knowledge relay.

Emits structured log records to stdout and to a size-rotated log file. The
process logger is configured once at startup and torn down at shutdown;
components receive it through their constructors.
"""

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict

from knowledge_relay.config import LogConfig

LOGGER_NAME = "knowledge_relay"

logger = logging.getLogger(LOGGER_NAME)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(log_config: LogConfig) -> logging.Logger:
    """Configure the relay logger with stdout and rotating file handlers.

    Calling this more than once leaves the existing handlers in place.

    Args:
        log_config: Log directory, level and rotation settings.

    Returns:
        The configured process logger.
    """
    level = _LEVELS.get(log_config.level.lower(), logging.INFO)
    logger.setLevel(level)

    if not logger.handlers:
        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )

        stdout_handler = logging.StreamHandler()
        stdout_handler.setLevel(level)
        stdout_handler.setFormatter(fmt)
        logger.addHandler(stdout_handler)

        log_dir = Path(log_config.dir)
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / "relay.log",
            mode="a",
            maxBytes=log_config.max_size_mb * 1024 * 1024,
            backupCount=log_config.max_backups,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(fmt)
        logger.addHandler(file_handler)

    return logger


def teardown_logging() -> None:
    """Flush, close and detach every handler on the relay logger."""
    for handler in list(logger.handlers):
        handler.flush()
        handler.close()
        logger.removeHandler(handler)


def log_event(
    log: logging.Logger,
    event: str,
    *,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    """Write a single structured JSON line.

    Fields whose value is None are omitted.

    Args:
        log: Logger to write to.
        event: Short event label (e.g. "chat_completed", "captcha_failed").
        level: Logging level for the record.
        **fields: Additional JSON-serializable fields.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
    }
    for key, value in fields.items():
        if value is not None:
            record[key] = value

    log.log(level, json.dumps(record, ensure_ascii=False, default=str))
