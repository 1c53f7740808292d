import logging
import json
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator, Optional

from .config import LoggingConfiguration
from .exceptions import MindTwinException

# Subject currently being processed, stamped on every record
subject_id_var: ContextVar[Optional[str]] = ContextVar('subject_id', default=None)


class LogFormat(Enum):
    PRETTY = "pretty"
    JSON = "json"


# ANSI color codes
RESET = "\033[0m"
COLORS = {
    "DEBUG": "\033[37m",   # White
    "INFO": "\033[36m",    # Cyan
    "WARNING": "\033[33m", # Yellow
    "ERROR": "\033[31m",   # Red
    "CRITICAL": "\033[41m\033[97m",  # White on Red background
    "TIME": "\033[90m",    # Gray for timestamps
    "MODULE": "\033[35m",  # Magenta
    "MESSAGE": "\033[0m",  # Default
}

_STD_KEYS = frozenset((
    "args", "msg", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno",
    "funcName", "created", "msecs", "relativeCreated", "thread",
    "threadName", "processName", "process", "taskName", "name",
))


class SubjectContextFilter(logging.Filter):
    """Attach the active subject id (if any) to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "subject_id"):
            record.subject_id = subject_id_var.get()
        return True


def _error_details(record: logging.LogRecord) -> Optional[dict]:
    """Structured payload of a mindtwin exception attached to ``record``."""
    if not record.exc_info:
        return None
    error = record.exc_info[1]
    return error.to_dict() if isinstance(error, MindTwinException) else None


class PrettyColoredFormatter(logging.Formatter):
    """
    Pretty, human-readable, colored log formatter.
    Format:
    2025-08-13 14:35:12.345 UTC | INFO     | twin_state_service:123 | [subject-1] Created twin

    mindtwin exceptions append their error code and correlation id.
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        level_color = COLORS.get(record.levelname, "")

        subject = getattr(record, "subject_id", None)
        message = f"[{subject}] {record.getMessage()}" if subject else record.getMessage()

        error = _error_details(record)
        if error is not None:
            message += f" ({error['error_code']}, correlation_id={error['correlation_id']})"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return " | ".join((
            f"{COLORS['TIME']}{timestamp} UTC{RESET}",
            f"{level_color}{record.levelname:<8}{RESET}",
            f"{COLORS['MODULE']}{record.module}:{record.lineno}{RESET}",
            f"{COLORS['MESSAGE']}{message}{RESET}",
        ))


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    ``extra`` fields are merged at the top level (stringified when they are
    not JSON serializable); a mindtwin exception is emitted under ``error``
    via its ``to_dict()``.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _STD_KEYS:
                continue
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = str(value)
            payload[key] = value

        error = _error_details(record)
        if error is not None:
            payload["error"] = error
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), default=str)


def setup_logging(config: Optional[LoggingConfiguration] = None, stream=None) -> logging.Logger:
    config = config or LoggingConfiguration()
    logger = logging.getLogger(config.logger_name)
    logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    handler = logging.StreamHandler(stream or sys.stdout)

    log_format = config.format.lower()

    if log_format == LogFormat.PRETTY.value:
        handler.setFormatter(PrettyColoredFormatter())
    elif log_format == LogFormat.JSON.value:
        handler.setFormatter(JsonFormatter())
    else:
        raise ValueError(f"Unknown log format: {log_format}")

    handler.addFilter(SubjectContextFilter())
    logger.handlers = [handler]
    logger.propagate = False
    return logger


@contextmanager
def subject_context(subject_id: str) -> Iterator[None]:
    """Scope log records emitted inside the block to ``subject_id``."""
    token = subject_id_var.set(subject_id)
    try:
        yield
    finally:
        subject_id_var.reset(token)
