"""Structured logging for fleetqa.

Every module logs through ``logging.getLogger(__name__)``. This module only
decides how records look:

- StructuredFormatter renders one JSON object per record for log collectors
- HumanReadableFormatter renders a colored single line for terminals
- log_context() attaches scenario and stage names to every record emitted
  inside it

Example:
    >>> setup_logging(verbose=True, fmt="json")
    >>> with log_context(scenario="unenroll", stage="enrolled"):
    ...     logger.info("Installing integration")

Per-record structured fields go through ``extra``::

    logger.info("Bundle verified", extra={"structured_data": {"checks": 2}})
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import IO, Any

_context_fields: ContextVar[dict[str, Any] | None] = ContextVar("fleetqa_log_context", default=None)

ROOT_LOGGER = "fleetqa"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Attributes:
        include_location: Whether to include file/line/function in output.
        timestamp_format: 'iso', 'unix', or a strftime format.
        extra_fields: Static fields added to every record.
    """

    def __init__(
        self,
        include_location: bool = False,
        timestamp_format: str = "iso",
        extra_fields: dict[str, Any] | None = None,
    ) -> None:
        super().__init__()
        self.include_location = include_location
        self.timestamp_format = timestamp_format
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {}

        if self.timestamp_format == "iso":
            log_data["timestamp"] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        elif self.timestamp_format == "unix":
            log_data["timestamp"] = record.created
        else:
            log_data["timestamp"] = self.formatTime(record, self.timestamp_format)

        log_data["level"] = record.levelname.lower()
        log_data["message"] = record.getMessage()
        log_data["logger"] = record.name

        if self.include_location:
            log_data["location"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        context = _context_fields.get()
        if context:
            log_data["context"] = dict(context)

        structured_data = getattr(record, "structured_data", None)
        if structured_data:
            log_data["data"] = dict(structured_data)

        if record.exc_info and record.exc_info[0] is not None:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in self.extra_fields.items():
            log_data.setdefault(key, value)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class HumanReadableFormatter(logging.Formatter):
    """Single-line formatter for terminals, colored when supported."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__()
        self.use_colors = use_colors and self._supports_color()

    @staticmethod
    def _supports_color() -> bool:
        if sys.platform == "win32":
            return os.environ.get("ANSICON") is not None or "WT_SESSION" in os.environ
        return hasattr(sys.stderr, "isatty") and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        timestamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.created))
        timestamp += f".{int(record.msecs):03d}"

        if self.use_colors:
            color = self.COLORS.get(record.levelname, "")
            level = f"{color}{record.levelname:8}{self.RESET}"
        else:
            level = f"{record.levelname:8}"

        base = f"{timestamp} {level} [{record.name}] {record.getMessage()}"

        context = _context_fields.get()
        if context:
            base += " | " + " ".join(f"{k}={v}" for k, v in context.items())

        structured_data = getattr(record, "structured_data", None)
        if structured_data:
            base += f" | data={json.dumps(structured_data, default=str)}"

        if record.exc_info:
            base += f"\n{self.formatException(record.exc_info)}"

        return base


def setup_logging(
    verbose: bool = False,
    fmt: str = "human",
    stream: IO[str] | None = None,
    use_colors: bool = True,
) -> logging.Handler:
    """Configure the ``fleetqa`` logger tree.

    Args:
        verbose: Log at DEBUG instead of INFO.
        fmt: 'human' or 'json'.
        stream: Output stream, stderr by default.
        use_colors: Allow ANSI colors in human output.

    Returns:
        The installed handler.
    """
    level = logging.DEBUG if verbose else logging.INFO

    root_logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.propagate = False

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)
    if fmt == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter(use_colors=use_colors))

    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    return handler


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Add fields to every record emitted inside the block.

    The previous context is restored on exit, so nested contexts compose.
    """
    current = dict(_context_fields.get() or {})
    current.update(kwargs)
    token = _context_fields.set(current)
    try:
        yield
    finally:
        _context_fields.reset(token)


def get_context() -> dict[str, Any]:
    current = _context_fields.get()
    return dict(current) if current else {}


def add_context(**kwargs: Any) -> None:
    """Add fields to the current context until the enclosing block exits."""
    current = dict(_context_fields.get() or {})
    current.update(kwargs)
    _context_fields.set(current)
