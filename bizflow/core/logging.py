"""Logging setup for bizflow.

Every record passing through the configured handlers is stamped with the
workflow context of the current thread (instance, step, operation), so
concurrent requests working on different instances keep their log lines
apart.
"""

import logging
import sys
import json
import threading
import traceback
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional, Dict, Any
from pathlib import Path


WORKFLOW_FIELDS = ("workflow_id", "instance_id", "step_id", "operation")

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(workflow_tag)s%(message)s"


class StructuredFormatter(logging.Formatter):
    """Render records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        workflow = getattr(record, "workflow", {})
        for field in WORKFLOW_FIELDS:
            if workflow.get(field):
                entry[field] = workflow[field]

        extra = getattr(record, "extra_fields", None)
        if extra:
            entry["extra"] = extra

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(entry, default=str)


class WorkflowContextFilter(logging.Filter):
    """Attach the calling thread's workflow context to each record."""

    def __init__(self):
        super().__init__()
        self._local = threading.local()

    @property
    def context(self) -> Dict[str, Any]:
        if not hasattr(self._local, "context"):
            self._local.context = {}
        return self._local.context

    def filter(self, record: logging.LogRecord) -> bool:
        context = dict(self.context)
        record.workflow = context
        if context.get("instance_id"):
            tag = f"[{context['instance_id']}"
            if context.get("step_id"):
                tag += f"/{context['step_id']}"
            record.workflow_tag = tag + "] "
        else:
            record.workflow_tag = ""
        return True


_context_filter = WorkflowContextFilter()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for the API server and the CLI.

    Args:
        level: Logging level name
        log_file: Optional file path; rotated at max_size
        log_format: Format for plain-text output; may use %(workflow_tag)s
        structured: Emit JSON lines instead of plain text
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of rotated files to keep

    Returns:
        The root logger
    """
    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_context_filter)
        root_logger.addHandler(handler)

    for noisy in ("sqlalchemy.engine", "sqlalchemy.pool", "httpx", "anthropic", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def set_logging_context(**kwargs):
    """Set workflow context fields for this thread's subsequent records."""
    _context_filter.context.update(kwargs)


def clear_logging_context():
    """Forget this thread's workflow context."""
    _context_filter.context.clear()


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log a message carrying additional fields (rendered by the JSON formatter)."""
    logger.log(level, message, extra={"extra_fields": context})


class ErrorRecoveryLogger:
    """Reports retries of transient store failures."""

    def __init__(self, operation: str):
        self.logger = get_logger("bizflow.recovery")
        self.operation = operation

    def log_recovery_attempt(self, error: Exception, attempt: int, max_attempts: int):
        log_with_context(
            self.logger, logging.WARNING,
            f"{self.operation} failed ({type(error).__name__}: {error}), "
            f"retrying (attempt {attempt}/{max_attempts})",
            operation=self.operation,
            error_type=type(error).__name__,
            attempt=attempt,
            max_attempts=max_attempts
        )

    def log_recovery_failure(self, final_error: Exception, attempts_used: int):
        log_with_context(
            self.logger, logging.ERROR,
            f"{self.operation} still failing after {attempts_used} attempts: {final_error}",
            operation=self.operation,
            error_type=type(final_error).__name__,
            attempts_used=attempts_used
        )
