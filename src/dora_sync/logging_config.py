"""Structured logging configuration for dora-sync.

- JSON structured logging with StructuredFormatter
- Logger hierarchy under the dora_sync namespace
- Environment variable control (DORA_LOG_LEVEL, DORA_LOG_FORMAT)
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

ROOT_LOGGER = "dora_sync"

# Keys redacted from structured log context
SENSITIVE_KEYS = {
    "password", "token", "secret", "apikey", "api_key", "app_key",
    "authorization", "credential", "auth", "key", "bearer",
}

_STANDARD_FIELDS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "exc_info",
    "exc_text",
    "stack_info",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON log formatter.

    Outputs one JSON object per record with:
    - timestamp: UTC ISO 8601 format with 'Z' suffix
    - level: Log level name (INFO, ERROR, etc.)
    - logger: Logger name (dora_sync hierarchy)
    - message: Log message
    - context: attributes passed through ``extra=``
    - exception: formatted traceback, when the record carries one

    Sensitive keys (token, api_key, ...) are replaced with ``[REDACTED]``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extras = {
            k: ("[REDACTED]" if k.lower() in SENSITIVE_KEYS else v)
            for k, v in record.__dict__.items()
            if k not in _STANDARD_FIELDS and not k.startswith("_")
        }
        if extras:
            log_data["context"] = extras

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter, selected with DORA_LOG_FORMAT=text."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def configure_logging(level: Optional[str] = None) -> None:
    """Configure logging for all dora_sync loggers.

    Args:
        level: Optional log level override. If not provided, uses DORA_LOG_LEVEL
               environment variable (default: INFO).

    Environment Variables:
        DORA_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR). Default: INFO
        DORA_LOG_FORMAT: Output format (json, text). Default: json
    """
    if level is None:
        level = os.getenv("DORA_LOG_LEVEL", "INFO")

    log_level = getattr(logging, level.upper(), logging.INFO)

    log_format = os.getenv("DORA_LOG_FORMAT", "json").lower()
    formatter = TextFormatter() if log_format == "text" else StructuredFormatter()

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(log_level)

    # Only one handler, however many times this is called
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.propagate = False
