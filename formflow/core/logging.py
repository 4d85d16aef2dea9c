"""Logging configuration for the workflow engine.

Log records are tagged with the run they belong to (``execution_id``,
``workflow_id``) and, inside the API, the request (``request_id``, method,
path). The tags live in a context variable so that concurrent requests and
runs never see each other's fields.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict

from .date_utils import utc_now

if TYPE_CHECKING:
    from ..config import AppConfig

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
}

_log_context: ContextVar[Dict[str, Any]] = ContextVar("formflow_log_context", default={})


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with the run and request tags merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": utc_now().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(getattr(record, "context", {}))
        entry.update(getattr(record, "extra_fields", {}))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }
        return json.dumps(entry, default=str)


class PlainFormatter(logging.Formatter):
    """Human readable lines; the run tags are appended in brackets."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "context", None)
        if context:
            tags = " ".join(f"{key}={value}" for key, value in context.items())
            line = f"{line} [{tags}]"
        return line


class RunContextFilter(logging.Filter):
    """Copies the current logging context onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = dict(_log_context.get())
        return True


_context_filter = RunContextFilter()


def setup_logging(config: "AppConfig") -> logging.Logger:
    """
    Configure the root logger from the application settings.

    Args:
        config: Settings providing the level, format, JSON switch and the
            optional rotating log file

    Returns:
        The root logger
    """
    if config.log_structured:
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = PlainFormatter(fmt=config.log_format, datefmt=DATE_FORMAT)

    handlers: list = [logging.StreamHandler(sys.stdout)]
    if config.log_file:
        Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            config.log_file,
            maxBytes=config.log_max_size,
            backupCount=config.log_backup_count
        ))

    root_logger = logging.getLogger()
    root_logger.setLevel(config.log_level.value)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_context_filter)
        root_logger.addHandler(handler)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def set_logging_context(**fields: Any) -> None:
    """Tag subsequent records of the current task or thread with ``fields``."""
    _log_context.set({**_log_context.get(), **fields})


def clear_logging_context(*keys: str) -> None:
    """Remove the given tags, or all of them when no key is given."""
    if not keys:
        _log_context.set({})
        return
    _log_context.set({key: value for key, value in _log_context.get().items() if key not in keys})


def get_logging_context() -> Dict[str, Any]:
    return dict(_log_context.get())


def log_with_context(logger: logging.Logger, level: int, message: str, **fields: Any) -> None:
    """Log ``message`` with ``fields`` added to the JSON output of this record only."""
    logger.log(level, message, extra={"extra_fields": fields})
