"""
Logging configuration for the change-tracking service.

Provides:
- JSON output for log aggregators, readable output for development
- Tracking session and actor ids pulled from context variables
- An optional dedicated file for ``AUDIT:`` lines emitted by the recorder
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Bound by the transaction coordinator for the duration of a unit of work
tracking_session_var: ContextVar[Optional[str]] = ContextVar('tracking_session_id', default=None)
actor_id_var: ContextVar[Optional[str]] = ContextVar('actor_id', default=None)

AUDIT_PREFIX = "AUDIT:"
AUDIT_LOGGER = "audit.tracking.recorder"

_QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite")


def _context_fields(record: logging.LogRecord) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    session_id = tracking_session_var.get()
    if session_id:
        fields["tracking_session_id"] = session_id
    actor_id = actor_id_var.get()
    if actor_id:
        fields["actor_id"] = actor_id
    extra_data = getattr(record, 'extra_data', None)
    if extra_data:
        fields.update(extra_data)
    return fields


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(_context_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line output for terminals."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        clock = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]
        line = f"{clock} {color}{record.levelname:8s}{self.RESET} [{record.name}] {record.getMessage()}"

        fields = _context_fields(record)
        if fields:
            line += " | " + " | ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class AuditLineFilter(logging.Filter):
    """Passes only the recorder's ``AUDIT:`` lines."""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.name == AUDIT_LOGGER and record.getMessage().startswith(AUDIT_PREFIX)


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that includes static context in all log messages."""

    def process(self, msg: str, kwargs: Dict) -> tuple:
        extra = kwargs.setdefault('extra', {})
        extra.setdefault('extra_data', {}).update(self.extra)
        return msg, kwargs


def _file_handler(path: Path, formatter: logging.Formatter) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[Path] = None,
    audit_log_file: Optional[Path] = None,
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, console output is JSON
        log_file: Optional file receiving every record as JSON
        audit_log_file: Optional file receiving only ``AUDIT:`` lines as JSON
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JsonFormatter() if json_output else ReadableFormatter())
    root_logger.addHandler(console)

    if log_file:
        root_logger.addHandler(_file_handler(log_file, JsonFormatter()))

    if audit_log_file:
        audit_handler = _file_handler(audit_log_file, JsonFormatter())
        audit_handler.addFilter(AuditLineFilter())
        root_logger.addHandler(audit_handler)

    # SQL echo is controlled by DatabaseSettings.echo_sql
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, **extra) -> ContextLogger:
    """
    Get a logger that adds ``extra`` to every record.

    Args:
        name: Logger name (typically __name__)
        **extra: Static context, e.g. ``component="snapshot-sweeper"``
    """
    return ContextLogger(logging.getLogger(name), extra)
