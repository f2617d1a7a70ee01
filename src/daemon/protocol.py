"""
Process-control daemon surface.

The supervisor talks to a daemon only through ``ProcessDaemon.connect()``
and the returned ``DaemonSession``. Requests return a ``DaemonResult``
instead of raising, so callers decide which failures matter.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from core.errors import DaemonErrorCode


@dataclass(frozen=True)
class Instance:
    """Handle for one worker process managed by the daemon."""
    pm_id: int                   # Daemon-wide id
    name: str                    # Full daemon-side group name
    index: int = 0               # Position within the group
    pid: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {"pm_id": self.pm_id, "name": self.name, "index": self.index, "pid": self.pid}


@dataclass
class LaunchSpec:
    """What the daemon is asked to run for one app group."""
    script: str
    name: str
    args: str                    # JSON-serialised worker arguments
    exec_mode: str = "cluster"
    instances: int = 1
    max_memory_restart: str = "100M"
    interpreter_args: list[str] = field(default_factory=list)


@dataclass
class GroupDescriptor:
    """One process as reported by ``DaemonSession.list()``."""
    name: str
    pm_id: int
    pid: Optional[int]
    status: str
    restarts: int = 0
    memory: int = 0


@dataclass
class DaemonError:
    """Typed failure returned by a daemon request."""
    code: DaemonErrorCode
    message: str


@dataclass
class DaemonResult:
    """Success-or-error result of a daemon request."""
    ok: bool
    value: Any = None
    error: Optional[DaemonError] = None

    @classmethod
    def success(cls, value: Any = None) -> "DaemonResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, code: DaemonErrorCode, message: str) -> "DaemonResult":
        return cls(ok=False, error=DaemonError(code=code, message=message))


@dataclass(frozen=True)
class LifecycleEvent:
    """A worker changed state (``event`` is e.g. "exit", "online")."""
    event: str
    status: str
    instance: Instance


@dataclass(frozen=True)
class OutputEvent:
    """Raw output captured from a worker."""
    stream: str                  # "stdout" or "stderr"
    data: str
    instance: Instance


DaemonEvent = Union[LifecycleEvent, OutputEvent]

_CLOSED = object()


class EventStream:
    """
    Cancellable async stream of daemon events.

    Producers call ``push()``; consumers iterate with ``async for``.
    ``close()`` ends iteration once already-queued events are drained.
    """

    def __init__(self, on_close: Optional[Callable[["EventStream"], None]] = None):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: DaemonEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        if self._on_close:
            self._on_close(self)

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> DaemonEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class DaemonSession(ABC):
    """An open connection to the daemon."""

    @abstractmethod
    async def start(self, spec: LaunchSpec) -> DaemonResult:
        """Launch ``spec.instances`` workers; value is the list of ``Instance``."""

    @abstractmethod
    async def delete(self, name: str) -> DaemonResult:
        """Stop and forget every worker of group ``name``."""

    @abstractmethod
    async def list(self) -> DaemonResult:
        """Value is a list of ``GroupDescriptor`` for every managed process."""

    @abstractmethod
    def subscribe(self) -> EventStream:
        """Open a stream of lifecycle and output events."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the session. Safe to call more than once."""


class ProcessDaemon(ABC):
    """A process-control daemon."""

    @abstractmethod
    async def connect(self) -> DaemonSession:
        """Open a session; raises ``DaemonConnectionError`` when unreachable."""
