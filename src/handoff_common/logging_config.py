"""
Logging configuration for vm-handoff.

Console output goes to stderr so it never mixes with command output.
Records logged inside a LogContext carry its fields (VM, operation,
restore step) on every handler: as a bracketed suffix on console and
plain file lines, and as a "context" object in JSON file logs.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Dict, Optional

CONSOLE_FORMAT = "%(levelname)s %(name)s%(context)s: %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(process)d]%(context)s %(message)s"

# Chatty at INFO
QUIET_LOGGERS = ("libvirt",)


def _format_context(context: Dict[str, object]) -> str:
    if not context:
        return ""
    fields = " ".join(f"{key}={value}" for key, value in context.items())
    return f" [{fields}]"


class ContextFilter(logging.Filter):
    """Gives every record a `context` attribute for the format strings."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = _format_context(getattr(record, "handoff_context", {}))
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log collectors."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
            "process": record.process,
        }

        context = getattr(record, "handoff_context", None)
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter that colors the level name on a terminal."""

    COLORS = {
        logging.DEBUG: "\033[36m",    # Cyan
        logging.INFO: "\033[32m",     # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",    # Red
        logging.CRITICAL: "\033[35m", # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        record.levelname = f"{self.COLORS.get(record.levelno, '')}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    json_logs: bool = False,
) -> None:
    """
    Configure the root logger.

    Args:
        level: Console level (the file always gets DEBUG)
        log_file: Rotating log file to write as well (optional)
        json_logs: Write the file as JSON lines instead of plain text
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if log_file else level)
    root_logger.handlers.clear()

    context_filter = ContextFilter()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.addFilter(context_filter)
    if sys.stderr.isatty():
        console_handler.setFormatter(ColoredFormatter(CONSOLE_FORMAT))
    else:
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(context_filter)
        file_handler.setFormatter(JSONFormatter() if json_logs else logging.Formatter(FILE_FORMAT))
        root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class LogContext:
    """
    Attach fields to every record logged inside the block.

    Contexts nest; inner fields extend (or override) the outer ones.

    Example:
        with LogContext(vm_name="WindowsVM", operation="stop"):
            with LogContext(step="rebind"):
                logger.info("Restoring drivers")

        logs "INFO ... [vm_name=WindowsVM operation=stop step=rebind]: Restoring drivers"
    """

    _active: Dict[str, object] = {}

    def __init__(self, **fields):
        self.fields = fields
        self._outer: Dict[str, object] = {}
        self._old_factory = None

    def __enter__(self) -> "LogContext":
        self._outer = LogContext._active
        context = {**self._outer, **self.fields}
        LogContext._active = context
        self._old_factory = logging.getLogRecordFactory()
        old_factory = self._old_factory

        def record_factory(*args, **kwargs):
            record = old_factory(*args, **kwargs)
            record.handoff_context = context
            return record

        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, *exc_info) -> None:
        logging.setLogRecordFactory(self._old_factory)
        LogContext._active = self._outer
