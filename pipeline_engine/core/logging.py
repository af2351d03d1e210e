"""Logging configuration for the pipeline engine."""

import contextvars
import json
import logging
import sys
import traceback
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional


# Per-task logging context; asyncio tasks inherit a copy at creation time.
_log_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "pipeline_log_context", default={}
)

# Context keys shown in plain-text lines, in this order.
_PLAIN_CONTEXT_KEYS = ("request_id", "workflow_id", "run_id", "node_id")

_QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "httpx": logging.WARNING,
    "asyncio": logging.WARNING,
}


def _exception_fields(exc_info) -> Dict[str, Any]:
    exc_type, exc_value, _ = exc_info
    fields = {
        "type": exc_type.__name__ if exc_type else None,
        "message": str(exc_value) if exc_value else None,
        "traceback": traceback.format_exception(*exc_info),
    }
    # Engine errors carry a taxonomy code worth indexing on.
    error_code = getattr(exc_value, "error_code", None)
    if error_code:
        fields["error_code"] = error_code
        fields["recoverable"] = getattr(exc_value, "recoverable", None)
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per line; run and node context become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }
        if record.exc_info:
            log_entry["exception"] = _exception_fields(record.exc_info)
        log_entry.update(getattr(record, "extra_fields", {}))
        return json.dumps(log_entry, default=str)


class ContextualFormatter(logging.Formatter):
    """Plain-text formatter that appends the run/node context, e.g. ``[run=r1 node=P]``."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "extra_fields", {})
        tags = [
            f"{key.replace('_id', '')}={fields[key]}"
            for key in _PLAIN_CONTEXT_KEYS if fields.get(key) is not None
        ]
        return f"{line} [{' '.join(tags)}]" if tags else line


class WorkflowContextFilter(logging.Filter):
    """Copies the current task's logging context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'extra_fields'):
            record.extra_fields = {}
        for key, value in _log_context.get().items():
            record.extra_fields.setdefault(key, value)
        return True


_context_filter = WorkflowContextFilter()


def _build_handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(_context_filter)
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure root logging for the pipeline engine.

    Replaces any handlers already on the root logger. Every handler gets the
    context filter, so lines logged inside a run carry its run and node ids.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path; rotated at ``max_size`` bytes
        log_format: Format string for plain-text output
        structured: Emit JSON lines instead of plain text
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Root logger instance
    """
    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = ContextualFormatter(
            fmt=log_format or "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.addHandler(_build_handler(logging.StreamHandler(sys.stdout), formatter))
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(_build_handler(
            RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count), formatter
        ))

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
    logging.getLogger("pipeline_engine.core").setLevel(logging.DEBUG if level.upper() == "DEBUG" else logging.INFO)

    return root_logger


def configure_logging(config) -> logging.Logger:
    """Apply the logging section of an AppConfig."""
    return setup_logging(
        level=config.log_level.value,
        log_file=config.log_file,
        log_format=config.log_format,
        structured=config.structured_logging,
        max_size=config.log_max_size,
        backup_count=config.log_backup_count
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_logging_context(**kwargs) -> contextvars.Token:
    """Add fields to the current task's logging context."""
    return _log_context.set({**_log_context.get(), **kwargs})


def get_logging_context() -> Dict[str, Any]:
    return dict(_log_context.get())


def clear_logging_context(token: Optional[contextvars.Token] = None):
    """Restore the context saved by ``token``, or drop every field."""
    if token is not None:
        _log_context.reset(token)
    else:
        _log_context.set({})


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    logger.log(level, message, extra={"extra_fields": context})


class ErrorRecoveryLogger:
    """Reports retry progress for one component (a scheduler, a store call)."""

    def __init__(self, component_name: str):
        self.logger = get_logger(f"pipeline_engine.recovery.{component_name}")
        self.component_name = component_name

    def _emit(self, level: int, message: str, operation: str, error: Optional[Exception] = None, **fields):
        if error is not None:
            fields["error_type"] = type(error).__name__
            fields["error_code"] = getattr(error, "error_code", type(error).__name__)
            fields["error_message"] = str(error)
        log_with_context(self.logger, level, message, component=self.component_name, operation=operation, **fields)

    def log_recovery_attempt(self, operation: str, error: Exception, attempt: int, max_attempts: int,
                             delay: float = 0.0):
        self._emit(
            logging.WARNING,
            f"Retrying {operation} in {delay:.2f}s after attempt {attempt}/{max_attempts} failed: {error}",
            operation, error, attempt=attempt, max_attempts=max_attempts, delay=round(delay, 3)
        )

    def log_recovery_success(self, operation: str, attempts_used: int):
        self._emit(
            logging.INFO, f"{operation} succeeded on attempt {attempts_used}",
            operation, attempts_used=attempts_used, recovery_status="success"
        )

    def log_recovery_failure(self, operation: str, final_error: Exception, attempts_used: int):
        self._emit(
            logging.ERROR, f"{operation} gave up after {attempts_used} attempt(s): {final_error}",
            operation, final_error, attempts_used=attempts_used, recovery_status="failed"
        )
