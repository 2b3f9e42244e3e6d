"""
Structured logging module with JSON formatting and correlation ID support.

This module provides:
- JSON log formatting for structured logging
- Correlation ID tracking via context variables (HTTP requests and job runs)
- Job-run context so every line emitted by a lifecycle job carries its name
- Logger factory for consistent logger creation
"""
import logging
import json
import sys
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator
from contextvars import ContextVar

# Correlation ID shared across the application (request id or job run id)
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

# Name of the lifecycle job currently running in this context, if any
job_name_var: ContextVar[str] = ContextVar("job_name", default="")

_STANDARD_RECORD_ATTRS = frozenset({
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "message",
    "asctime",
    "taskName",
})


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter for structured logging.

    Outputs logs as JSON objects with the following fields:
    - timestamp: ISO 8601 formatted timestamp
    - level: Log level
    - logger: Logger name
    - message: Log message
    - correlation_id: Request or job-run correlation ID (if available)
    - job: Lifecycle job name (if the line was emitted inside a job run)
    - exception: Exception details (if an exception occurred)
    - extra: Any additional context from extra dict
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": correlation_id_var.get(),
        }

        job_name = job_name_var.get()
        if job_name:
            log_data["job"] = job_name

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_keys = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _STANDARD_RECORD_ATTRS
        }
        if extra_keys:
            log_data["extra"] = extra_keys

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """
    Colored console formatter for development.

    Human-readable output that still shows the job name and correlation ID.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors."""
        level_color = self.COLORS.get(record.levelname, "")
        job_name = job_name_var.get()
        correlation_id = correlation_id_var.get()

        prefix = f"[{job_name}] " if job_name else ""
        base_msg = f"{level_color}[{record.levelname}]{self.RESET} {prefix}{record.name}: {record.getMessage()}"

        if correlation_id:
            base_msg += f" | correlation_id={correlation_id}"

        if record.exc_info:
            base_msg += "\n" + self.formatException(record.exc_info)

        return base_msg


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    handler: logging.Handler | None = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, use JSON formatter. If False, use colored console formatter.
        handler: Optional custom handler. If None, creates StreamHandler to stdout.
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)

    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(log_level)

    handler.setFormatter(JSONFormatter() if json_output else ColoredFormatter())
    root_logger.addHandler(handler)

    # Reduce noise from third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance (typically for ``__name__``)."""
    return logging.getLogger(name)


def set_correlation_id(correlation_id: str) -> Any:
    """
    Set the correlation ID in the context.

    Returns:
        Token that can be used to reset the context variable
    """
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID, or empty string if not set."""
    return correlation_id_var.get()


def clear_correlation_id(token: Any) -> None:
    """Reset the correlation ID using the token returned by set_correlation_id."""
    correlation_id_var.reset(token)


@contextmanager
def job_run_context(job_name: str) -> Iterator[str]:
    """
    Bind a job name and a fresh run ID to the logging context.

    An enclosing request correlation ID is kept as a prefix so API-triggered
    runs can still be traced back to the request.

    Yields:
        The run ID used as correlation ID for the duration of the block
    """
    parent = correlation_id_var.get()
    run_id = f"{job_name}-{uuid.uuid4().hex[:8]}"
    if parent:
        run_id = f"{parent}/{run_id}"

    job_token = job_name_var.set(job_name)
    correlation_token = correlation_id_var.set(run_id)
    try:
        yield run_id
    finally:
        correlation_id_var.reset(correlation_token)
        job_name_var.reset(job_token)
