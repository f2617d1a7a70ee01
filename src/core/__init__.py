"""Core supervisor components."""

from .config import ConfigLoader, SupervisorConfig
from .log import EventLogger, LogLevel, configure_logging
from .errors import (
    SupervisorError,
    ConfigError,
    DaemonConnectionError,
    StartError,
    StopError,
    ListError,
)

__all__ = [
    "ConfigLoader",
    "SupervisorConfig",
    "EventLogger",
    "LogLevel",
    "configure_logging",
    "SupervisorError",
    "ConfigError",
    "DaemonConnectionError",
    "StartError",
    "StopError",
    "ListError",
]
