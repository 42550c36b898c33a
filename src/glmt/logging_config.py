"""Centralized logging configuration for the GLMT proxy.

The proxy reserves stdout for its readiness line, so every handler here
writes to stderr or to a file. Console output stays at WARNING unless
verbose mode is requested; full payload dumps are only logged at DEBUG.

Usage:
    from glmt.logging_config import configure_logging

    # Configure once at process startup
    configure_logging(verbose=True)

Environment Variables:
    GLMT_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    GLMT_LOG_FORMAT: Output format ("text" or "json")
    GLMT_LOG_FILE: Optional log file path
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, Literal

TEXT_FORMAT_WITH_MS = "%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False

_STANDARD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Outputs logs as JSON objects with consistent structure:
    {
        "timestamp": "2025-12-28T14:30:00.123",
        "level": "INFO",
        "logger": "glmt.proxy",
        "message": "[00001_...] Request complete",
        "extra": {...}
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}
        if extra:
            log_data["extra"] = extra

        return json.dumps(log_data, default=str)


def configure_logging(
    level: str | None = None,
    format: Literal["text", "json"] | None = None,
    file_path: str | None = None,
    verbose: bool = False,
    force: bool = False,
) -> None:
    """Configure logging for the proxy process.

    Subsequent calls are ignored unless force=True.

    Args:
        level: Root log level. Defaults to GLMT_LOG_LEVEL, then DEBUG when
               verbose and INFO otherwise.
        format: Output format. Defaults to GLMT_LOG_FORMAT or "text".
        file_path: Optional log file. Defaults to GLMT_LOG_FILE.
        verbose: Let DEBUG output reach the console.
        force: Reconfigure even if already configured.
    """
    global _configured
    if _configured and not force:
        return

    level = level or os.environ.get("GLMT_LOG_LEVEL") or ("DEBUG" if verbose else "INFO")
    format = format or os.environ.get("GLMT_LOG_FORMAT", "text")  # type: ignore[assignment]
    file_path = file_path or os.environ.get("GLMT_LOG_FILE")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    if format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT_WITH_MS, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root_logger.addHandler(console_handler)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Quiet noisy loggers
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

    _configured = True
