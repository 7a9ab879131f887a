"""Structured logging for the insight apply core.

This module provides:
- JSON-formatted log output for production environments
- Review context via ContextVar (batch_id, user_id)
- get_logger() for module-level loggers
- Human-readable format for development
"""

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any

# Context variables for the suggestion batch under review
batch_id_var: ContextVar[str | None] = ContextVar("batch_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)

# LogRecord attributes that are never treated as extra fields
_STANDARD_ATTRS = frozenset(
    {
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
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


def get_batch_id() -> str | None:
    """Get the current batch ID from context."""
    return batch_id_var.get()


def get_user_id() -> str | None:
    """Get the current user ID from context."""
    return user_id_var.get()


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production environments.

    Output format:
    {
        "timestamp": "2026-01-29T12:34:56.789Z",
        "level": "INFO",
        "logger": "services.apply_coordinator",
        "message": "Applied goal-0",
        "batch_id": "b-123",
        "user_id": "42",
        "extra": {...}
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        batch_id = get_batch_id()
        user_id = get_user_id()
        if batch_id:
            log_data["batch_id"] = batch_id
        if user_id:
            log_data["user_id"] = user_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
            log_data["exception_type"] = (
                record.exc_info[0].__name__ if record.exc_info[0] else None
            )

        # Fields passed as logger.info("msg", extra={"key": "value"})
        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable log formatter for development.

    Output format:
    2026-01-29 12:34:56.789 | INFO     | services.apply_coordinator | [b-123] Applied goal-0
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        level = record.levelname.ljust(8)
        batch_id = get_batch_id()
        prefix = f"[{batch_id[:8]}] " if batch_id else ""

        formatted = f"{timestamp} | {level} | {record.name} | {prefix}{record.getMessage()}"
        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"
        return formatted


def configure_logging(
    level: str | None = None,
    json_format: bool | None = None,
):
    """Configure the root logger with structured logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL). Defaults to
            settings.log_level.
        json_format: Use JSON format. If None, JSON unless settings.debug is on.
    """
    if level is None or json_format is None:
        from config import get_settings

        settings = get_settings()
        level = level or settings.log_level
        if json_format is None:
            json_format = not settings.debug

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_format else HumanReadableFormatter())
    root_logger.addHandler(handler)

    # Quiet the HTTP stacks used by the persistence and LLM clients
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the module.

    Falls back to configure_logging() defaults if nothing configured
    the root logger yet.
    """
    logger = logging.getLogger(name)
    if not logging.getLogger().handlers:
        configure_logging()
    return logger


class LogContext:
    """Context manager binding a batch (and optionally a user) to log records.

    Usage:
        async with LogContext(batch_id="b-123", user_id="42"):
            logger.info("This log will include the batch id")
    """

    def __init__(self, batch_id: str | None = None, user_id: str | None = None):
        self.batch_id = batch_id
        self.user_id = user_id
        self._tokens: list[tuple[ContextVar, Token]] = []

    def __enter__(self):
        if self.batch_id:
            self._tokens.append((batch_id_var, batch_id_var.set(self.batch_id)))
        if self.user_id:
            self._tokens.append((user_id_var, user_id_var.set(self.user_id)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)
