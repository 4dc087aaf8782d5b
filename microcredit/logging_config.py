"""
Structured Logging Configuration Module

JSON log records for ledger operations. Every record emitted while a request
is being served carries that request's correlation ID.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import contextvars
import json
import logging


ROOT_LOGGER = "microcredit"

# Optional record attributes copied into the JSON entry when present
ACTION_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Per-request correlation ID using contextvars
_correlation_id = contextvars.ContextVar('correlation_id', default=None)


def get_correlation_id() -> Optional[str]:
    """Correlation ID of the request being served, if any"""
    return _correlation_id.get()


@contextmanager
def correlation_context(correlation_id: str):
    """Tag every action logged inside the block with ``correlation_id``"""
    token = _correlation_id.set(correlation_id)
    try:
        yield
    finally:
        _correlation_id.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in ACTION_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = ROOT_LOGGER,
                  format_type: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the portal logger with a single handler.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Logger to configure; children inherit its handler
        format_type: "json" or "text"
        log_file: Write to this file instead of stdout

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    formatter = JSONFormatter() if format_type == "json" else logging.Formatter(TEXT_FORMAT)
    handler.setFormatter(formatter)

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    # Handled here only; the root logger would print the record a second time
    logger.propagate = False

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Emit a structured action record.

    ``correlation_id`` defaults to the one bound by
    :func:`correlation_context` for the current request.
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id or get_correlation_id(),
        "extra": extra,
    }
    logger.log(levelno, message, extra={k: v for k, v in fields.items() if v})
