"""Orchestrator module - supervision of worker app groups."""

from .lifecycle import AppLifecycleManager, AppGroup
from .shutdown import ShutdownCoordinator, RunState
from .listener import EventBusListener
from .demux import LogDemultiplexer

__all__ = [
    "AppLifecycleManager",
    "AppGroup",
    "ShutdownCoordinator",
    "RunState",
    "EventBusListener",
    "LogDemultiplexer",
]
