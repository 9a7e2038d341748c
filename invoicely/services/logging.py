"""
Structured logging for the Invoicely approval service.
"""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional
import os

# Log level from environment
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Configure package logger; module loggers (invoicely.*) propagate here
logger = logging.getLogger("invoicely")
logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

# Remove existing handlers
logger.handlers.clear()

console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
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

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


# Use JSON formatter in production, simple formatter in development
USE_JSON_LOGS = os.getenv("USE_JSON_LOGS", "false").lower() == "true"

if USE_JSON_LOGS:
    formatter = JSONFormatter()
else:
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

console_handler.setFormatter(formatter)
logger.addHandler(console_handler)

# Prevent propagation to root logger
logger.propagate = False


def _emit(level: int, message: str, extra_fields: Dict[str, Any]) -> None:
    record = logging.LogRecord(
        name=logger.name,
        level=level,
        pathname="",
        lineno=0,
        msg=message,
        args=(),
        exc_info=None,
    )
    record.extra_fields = extra_fields
    logger.handle(record)


def log_request(
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    user_id: Optional[str] = None,
    **kwargs
):
    """Log HTTP request."""
    extra_fields = {
        "type": "http_request",
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
    }
    if user_id:
        extra_fields["user_id"] = user_id
    extra_fields.update(kwargs)
    _emit(logging.INFO, f"{method} {path} {status_code}", extra_fields)


def log_approval_event(
    event: str,
    approval_id: str,
    actor_id: Optional[str] = None,
    **kwargs
):
    """Log an accepted approval transition (submitted, approved, rejected, advanced)."""
    extra_fields = {
        "type": "approval_event",
        "event": event,
        "approval_id": approval_id,
    }
    if actor_id:
        extra_fields["actor_id"] = actor_id
    extra_fields.update(kwargs)
    _emit(logging.INFO, f"approval {event}: {approval_id}", extra_fields)


def log_error(
    error_type: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    exception: Optional[Exception] = None
):
    """Log error with context."""
    extra_fields = {
        "type": "error",
        "error_type": error_type,
    }
    if context:
        extra_fields.update(context)

    if exception:
        logger.error(message, exc_info=exception, extra={"extra_fields": extra_fields})
    else:
        _emit(logging.ERROR, message, extra_fields)
