"""
Structured logging for the appliance updater.

Every state transition and external-call outcome of an update pass is
appended to a durable log file as one JSON object per line. Interactive runs
additionally echo a plain-text rendering of the same records to the terminal.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from appliance_updater.config import LoggingConfig

ROOT_LOGGER_NAME = "appliance_updater"

# Terminal echo format
DEFAULT_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_RECORD_KEYS = frozenset(
    logging.LogRecord("", logging.NOTSET, "", 0, "", None, None).__dict__
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """
    Render each record as a single JSON line for the durable update log.

    Fields: timestamp (UTC, ISO 8601), level, logger, message, exception
    when present, and every non-None value passed through ``extra``, such
    as subsystem, step or version.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in set(record.__dict__.keys()) - _RESERVED_RECORD_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    log_path: Path | str | None = None,
    echo: bool | None = None,
) -> logging.Logger:
    """
    Configure the logging system for an update pass.

    Args:
        config: Optional LoggingConfig. If provided, overrides level and
            log_path.
        level: Default log level if no config is provided.
        log_path: Durable log file, opened in append mode.
        echo: Whether to echo records to stdout. None means "only when stdout
            is a terminal" unless the config forces a value.

    Returns:
        The root logger configured for the appliance_updater package.

    Example:
        >>> from appliance_updater.logging import setup_logging
        >>> logger = setup_logging(level="DEBUG", log_path="/tmp/updater.log")
        >>> logger.info("Starting version check", extra={"pass_id": "abc"})
    """
    if config is not None:
        level = config.level
        log_path = config.log_path
        if echo is None:
            echo = config.log_to_stdout

    if echo is None:
        echo = sys.stdout.isatty()

    log_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(log_level)

    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    if log_path:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    if echo:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(log_level)
        stream_handler.setFormatter(
            logging.Formatter(DEFAULT_LOG_FORMAT, datefmt=DEFAULT_DATE_FORMAT)
        )
        logger.addHandler(stream_handler)

    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: The name for the logger, typically __name__ of the calling module.
            The "appliance_updater." prefix is added automatically if not present.

    Returns:
        A configured logger instance.
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)
