"""Process-control daemon surface and the bundled local backend."""

from .protocol import (
    DaemonResult,
    DaemonSession,
    EventStream,
    GroupDescriptor,
    Instance,
    LaunchSpec,
    LifecycleEvent,
    OutputEvent,
    ProcessDaemon,
)
from .local import LocalDaemon

__all__ = [
    "DaemonResult",
    "DaemonSession",
    "EventStream",
    "GroupDescriptor",
    "Instance",
    "LaunchSpec",
    "LifecycleEvent",
    "OutputEvent",
    "ProcessDaemon",
    "LocalDaemon",
]
