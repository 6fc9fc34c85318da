"""
Structured Logging Configuration

Provides:
- Run IDs for tracing one ingestion pass, snapshot cycle, or distribution
- JSON formatting for machine parsing (file handler, rotated)
- Human-readable console output
- Contextual data (cycle_id, distribution_id) on every record
"""

import contextvars
import json
import logging
import logging.handlers
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4


# Context variables for run tracking
task_name_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "task_name", default=None
)
cycle_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "cycle_id", default=None
)
distribution_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "distribution_id", default=None
)


class RunContext:
    """Context manager that tags log records with the current run."""

    def __init__(
        self,
        task_name: Optional[str] = None,
        cycle_id: Optional[str] = None,
        distribution_id: Optional[str] = None,
    ):
        self.task_name = task_name
        self.cycle_id = cycle_id or uuid4().hex[:12]
        self.distribution_id = distribution_id
        self._tokens = []

    def __enter__(self):
        self._tokens.append((cycle_id_var, cycle_id_var.set(self.cycle_id)))
        if self.task_name:
            self._tokens.append((task_name_var, task_name_var.set(self.task_name)))
        if self.distribution_id:
            self._tokens.append((distribution_id_var, distribution_id_var.set(self.distribution_id)))
        return self

    def __exit__(self, *args):
        for var, token in reversed(self._tokens):
            var.reset(token)


def _context_fields() -> Dict[str, str]:
    fields = {}
    for key, var in (
        ("task", task_name_var),
        ("cycle_id", cycle_id_var),
        ("distribution_id", distribution_id_var),
    ):
        value = var.get()
        if value:
            fields[key] = value
    return fields


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        include_traceback: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
    ):
        super().__init__()
        self.include_traceback = include_traceback
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        log_data.update(_context_fields())
        log_data.update(self.extra_fields)

        if record.exc_info and self.include_traceback:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        if hasattr(record, "extra_data"):
            log_data["extra"] = record.extra_data

        return json.dumps(log_data, default=str)


class StructuredFormatter(logging.Formatter):
    """Human-readable structured formatter for console output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            "%Y-%m-%d %H:%M:%S"
        )

        level = record.levelname
        if self.use_color and sys.stdout.isatty():
            level = f"{self.COLORS.get(level, '')}{level}{self.COLORS['RESET']}"

        parts = [f"[{timestamp}]", f"[{level}]", f"[{record.name}]", record.getMessage()]

        context = _context_fields()
        if context:
            parts.append("[" + ", ".join(f"{k}={v}" for k, v in context.items()) + "]")

        if record.exc_info:
            parts.append("\n" + "".join(traceback.format_exception(*record.exc_info)))

        return " ".join(parts)


def setup_logging(
    log_dir: Union[str, Path] = "logs",
    log_file: str = "revshare.log",
    level: Union[str, int] = logging.INFO,
    json_format: bool = True,
    console_output: bool = True,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 10,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> logging.Logger:
    """
    Configure structured logging for the application.

    Args:
        log_dir: Directory for log files
        log_file: Name of the log file
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting for file logs
        console_output: Enable console output
        max_bytes: Max size of log file before rotation
        backup_count: Number of backup files to keep
        extra_fields: Additional fields to include in all JSON logs

    Returns:
        Configured root logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    file_handler = logging.handlers.RotatingFileHandler(
        log_path / log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    if json_format:
        file_handler.setFormatter(JSONFormatter(extra_fields=extra_fields))
    else:
        file_handler.setFormatter(StructuredFormatter(use_color=False))
    root_logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(StructuredFormatter(use_color=True))
        root_logger.addHandler(console_handler)

    # aiohttp access/debug chatter is not useful at INFO
    logging.getLogger("aiohttp").setLevel(max(level, logging.WARNING))

    return root_logger
