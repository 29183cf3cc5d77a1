"""Structured logging configuration for the portal.

This module configures Python's standard logging module with text,
structured or JSON output, and provides the security event helper used
by the request guard to report rejected and suspicious requests.
"""

import json
import logging
import logging.config
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Optional

from portal.app.core.config import Settings, settings

SECURITY_LOGGER_NAME = "portal.security"

# Set by RequestIdMiddleware for the duration of a request
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_RESERVED_RECORD_KEYS = frozenset(
    (
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "taskName",
        "message", "asctime", "timestamp", "logger", "level", "source",
    )
)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Outputs log records as JSON objects for consumption by log aggregation
    systems like ELK Stack or Grafana Loki.
    """

    # Contextual fields for request tracking
    CONTEXT_FIELDS = [
        "request_id",    # Request ID from X-Request-ID header
        "event",         # Security event name
        "client",        # Client address (as seen by the guard)
        "user_agent",    # Client user agent
        "path",          # Request path
        "method",        # HTTP method
        "status_code",   # HTTP response status
    ]

    def __init__(self, datefmt: Optional[str] = None):
        super().__init__(datefmt=datefmt)

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON string representation of the log record
        """
        log_data: Dict[str, Any] = {}

        record.message = record.getMessage()

        log_data["timestamp"] = datetime.now().astimezone().isoformat()
        log_data["level"] = record.levelname
        log_data["logger"] = record.name
        log_data["message"] = record.message

        log_data["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        for field in self.CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None and value != "-":
                log_data[field] = value

        # Anything else passed through extra=
        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS or key in self.CONTEXT_FIELDS:
                continue
            log_data.setdefault("extra", {})[key] = value

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Logging filter that adds contextual fields to log records.

    Fills in defaults so format strings referencing request_id or event
    never fail on records logged outside a request.
    """

    CONTEXT_DEFAULTS = {
        "request_id": None,
        "event": None,
        "client": None,
        "user_agent": None,
        "path": None,
        "method": None,
        "status_code": None,
    }

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_var.get()
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        return True


def get_logging_config(app_settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Get logging configuration dictionary.

    Args:
        app_settings: Settings to read log_level and log_format from,
            defaults to the environment settings

    Returns:
        Logging configuration dict compatible with logging.config.dictConfig
    """
    source = app_settings if app_settings is not None else settings
    log_format = getattr(source, "log_format", "text").lower()
    log_level = getattr(source, "log_level", "INFO").upper()

    formatters: Dict[str, Any] = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s - request_id=%(request_id)s - event=%(event)s - client=%(client)s"
        },
    }

    if log_format == "json":
        formatters["json"] = {
            "()": "portal.app.core.logging.JSONFormatter",
        }
        default_formatter = "json"
    else:
        default_formatter = "structured" if log_format == "structured" else "standard"

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": default_formatter,
            "stream": sys.stdout,
            "filters": ["context"],
        },
        "error_console": {
            "class": "logging.StreamHandler",
            "level": "ERROR",
            "formatter": default_formatter,
            "stream": sys.stderr,
            "filters": ["context"],
        },
    }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {
                "()": "portal.app.core.logging.ContextFilter",
            },
        },
        "handlers": handlers,
        "loggers": {
            "portal": {
                "level": log_level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
            "uvicorn": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
    }


def setup_logging(app_settings: Optional[Settings] = None) -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config(app_settings))

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str = "portal") -> logging.Logger:
    """Get a logger instance with the specified name.

    Args:
        name: Logger name, defaults to "portal"

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def log_security_event(event: str, level: str = "info", **details: Any) -> None:
    """Log a security relevant event (rejection or suspicious request).

    Args:
        event: Short event name, e.g. "rate_limit_exceeded"
        level: One of "info", "warning" or "error"
        **details: Context such as client, path, user_agent; passed as extra
    """
    extra = {k: v for k, v in details.items() if v is not None and k not in _RESERVED_RECORD_KEYS}
    extra["event"] = event
    get_logger(SECURITY_LOGGER_NAME).log(
        _LEVELS.get(level, logging.INFO),
        f"Security event: {event}",
        extra=extra,
    )
