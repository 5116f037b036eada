"""Structured logging configuration for PingBuoy.

This module provides a structured logging setup using Python's standard
logging module with JSON formatting for production environments.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from pingbuoy.app.core.config import settings


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Outputs log records as JSON objects for consumption by log aggregation
    systems like ELK Stack or Grafana Loki.

    Attributes:
        fields: List of fields to include in JSON output
    """

    # Standard fields always included
    STANDARD_FIELDS = ["name", "levelname", "message", "timestamp"]

    # Contextual fields for rate limit tracking
    CONTEXT_FIELDS = [
        "request_id",    # Request ID from X-Request-ID header
        "identifier",    # Rate limit identifier (masked)
        "service",       # Service class label (email, monitoring, ...)
        "client_ip",     # Resolved client address
        "error_kind",    # Backend error classification
        "path",          # Request path
        "method",        # HTTP method
        "status_code",   # HTTP response status
    ]

    # LogRecord attributes that never go to "extra"
    _RESERVED = frozenset((
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "asctime", "timestamp", "logger", "level", "source", "taskName",
    ))

    def __init__(
        self,
        fields: Optional[list] = None,
        datefmt: Optional[str] = None,
    ):
        super().__init__(datefmt=datefmt)
        self.fields = fields or (self.STANDARD_FIELDS + self.CONTEXT_FIELDS)

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

        for key, value in record.__dict__.items():
            if key in self._RESERVED or key in self.CONTEXT_FIELDS:
                continue
            log_data.setdefault("extra", {})[key] = value

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Logging filter that adds contextual fields to log records.

    Adds default values for request_id, identifier, service and other
    contextual fields if not already present in the log record.
    """

    CONTEXT_DEFAULTS = {field: None for field in JSONFormatter.CONTEXT_FIELDS}

    def filter(self, record: logging.LogRecord) -> bool:
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        return True


def get_logging_config() -> Dict[str, Any]:
    """Get logging configuration dictionary.

    Returns:
        Logging configuration dict compatible with logging.config.dictConfig
    """
    log_format = getattr(settings, "log_format", "text").lower()
    log_level = getattr(settings, "log_level", "INFO").upper()

    formatters = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s - service=%(service)s - identifier=%(identifier)s - error_kind=%(error_kind)s"
        },
    }

    if log_format == "json":
        formatters["json"] = {
            "()": "pingbuoy.app.core.logging.JSONFormatter",
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
                "()": "pingbuoy.app.core.logging.ContextFilter",
            },
        },
        "handlers": handlers,
        "loggers": {
            "pingbuoy": {
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


def setup_logging() -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config())

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str = "pingbuoy") -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)


def mask_identifier(identifier: Optional[str]) -> Optional[str]:
    """Mask the local part of e-mail addresses inside an identifier.

    ``recipient:alice@example.com`` becomes ``recipient:a***@example.com``.
    Identifiers without an ``@`` are returned unchanged.
    """
    if not identifier or "@" not in identifier:
        return identifier
    head, _, domain = identifier.rpartition("@")
    scope, sep, local = head.rpartition(":")
    masked = (local[:1] + "***") if local else "***"
    return f"{scope}{sep}{masked}@{domain}"


def get_log_context(
    request_id: Optional[str] = None,
    identifier: Optional[str] = None,
    service: Optional[str] = None,
    client_ip: Optional[str] = None,
    error_kind: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Create a log context dictionary for use with extra parameter.

    Example:
        >>> logger.warning(
        ...     "Rate limit exceeded",
        ...     extra=get_log_context(identifier="ip:1.2.3.4", service="email")
        ... )
    """
    context = {
        "request_id": request_id,
        "identifier": mask_identifier(identifier),
        "service": service,
        "client_ip": client_ip,
        "error_kind": error_kind,
    }
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}
