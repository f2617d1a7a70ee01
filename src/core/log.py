"""Structured logging setup and the supervisor's event logger."""

import logging
import os
import sys
from enum import Enum
from typing import Any, Optional

import structlog


class LogLevel(Enum):
    """Levels understood by the structured log envelope."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    FATAL = "FATAL"


_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.FATAL: logging.CRITICAL,
}


def configure_logging(level: str = "INFO", fmt: Optional[str] = None) -> None:
    """Configure structlog on top of stdlib logging."""
    fmt = "json" if os.getenv("LOG_FORMAT") == "json" else (fmt or "console")

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if fmt == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class EventLogger:
    """
    Sink for supervisor log records.

    Records are ``{"type": ..., "payload": {...}}`` dicts; the type becomes
    the structlog event name and the payload is bound as a single key.
    """

    def __init__(self, logger: Any = None, raw_stream: Any = None):
        self._logger = logger or structlog.get_logger("cluster_supervisor")
        self._raw_stream = raw_stream

    def log(self, level: LogLevel, record: dict[str, Any]) -> None:
        self._logger.log(
            _STDLIB_LEVELS[level],
            record["type"],
            payload=record.get("payload", {}),
        )

    def raw(self, line: str) -> None:
        """Write a line straight to stderr, bypassing structlog."""
        stream = self._raw_stream or sys.stderr
        stream.write(line if line.endswith("\n") else line + "\n")
        stream.flush()
