"""Logging configuration for the Canvass intake service.

This module sets up structured logging with JSON formatting for production
and human-readable formatting for development. Every record carries the
correlation id of the request being processed, so a support engineer can
follow one submission from the caller's error payload into the logs.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from canvass.config import get_settings

# Correlation id of the request currently being processed in this context
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_ATTRS = {
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
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "request_id",
}


def bind_request_id(request_id: Optional[str]) -> None:
    """Bind a correlation id to the current execution context."""
    _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    """Return the correlation id bound to the current context, if any."""
    return _request_id.get()


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging in production.

    Formats log records as JSON objects with timestamp, level, message,
    and additional context fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if getattr(record, "request_id", None):
            log_data["request_id"] = record.request_id

        # Add any custom extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class DevelopmentFormatter(logging.Formatter):
    """Human-readable formatter for development.

    Formats log records with color coding and clear structure for
    easier reading during development.
    """

    # ANSI color codes
    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",  # Reset
    }

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors for development.

        Args:
            record: Log record to format

        Returns:
            Colored, formatted log string
        """
        color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        reset = self.COLORS["RESET"]

        formatted = (
            f"{color}[{record.levelname:8}]{reset} "
            f"{record.name:30} - {record.getMessage()}"
        )

        if getattr(record, "request_id", None):
            formatted += f" [request_id={record.request_id}]"

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


class RequestContextFilter(logging.Filter):
    """Logging filter that adds request context to log records.

    Reads the correlation id bound with bind_request_id() unless a fixed
    request_id was given at construction time.
    """

    def __init__(self, request_id: Optional[str] = None):
        """Initialize filter with an optional fixed request id.

        Args:
            request_id: Request ID to add to log records
        """
        super().__init__()
        self.request_id = request_id

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context fields to log record.

        Args:
            record: Log record to modify

        Returns:
            Always True to allow the record through
        """
        request_id = self.request_id or get_request_id()
        if request_id and not getattr(record, "request_id", None):
            record.request_id = request_id
        return True


def setup_logging() -> None:
    """Configure application logging based on environment.

    In production, uses JSON formatting for structured logs.
    In development, uses colored human-readable formatting.
    """
    settings = get_settings()

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(settings.log_level)
    console_handler.addFilter(RequestContextFilter())

    if settings.is_production:
        formatter = JSONFormatter()
    else:
        formatter = DevelopmentFormatter()

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Set log levels for third-party libraries
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(
        f"Logging configured - Environment: {settings.environment}, "
        f"Level: {settings.log_level}"
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)
