"""Shared fixtures: an in-memory daemon and a recording event logger."""

import asyncio
import os
import sys
from typing import Optional

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from core.config import SupervisorConfig
from core.errors import DaemonConnectionError, DaemonErrorCode
from core.log import LogLevel
from daemon.protocol import (
    DaemonResult,
    DaemonSession,
    EventStream,
    GroupDescriptor,
    Instance,
    LifecycleEvent,
    OutputEvent,
    ProcessDaemon,
)
from orchestrator.lifecycle import AppLifecycleManager


class FakeSession(DaemonSession):
    def __init__(self, daemon: "FakeDaemon"):
        self.daemon = daemon
        self.connected = True
        self.streams: list[EventStream] = []

    async def start(self, spec):
        self.daemon.launched.append(spec)
        if self.daemon.start_error:
            return DaemonResult.failure(*self.daemon.start_error)
        if spec.name in self.daemon.groups:
            return DaemonResult.failure(
                DaemonErrorCode.ALREADY_EXISTS,
                f"process name already exists: {spec.name}",
            )
        instances = [
            Instance(pm_id=i, name=spec.name, index=i, pid=1000 + i)
            for i in range(spec.instances)
        ]
        self.daemon.groups[spec.name] = instances
        return DaemonResult.success(instances)

    async def delete(self, name):
        self.daemon.deleted.append(name)
        if self.daemon.delete_error:
            return DaemonResult.failure(*self.daemon.delete_error)
        if name not in self.daemon.groups:
            return DaemonResult.failure(DaemonErrorCode.NOT_FOUND, "process name not found")
        self.daemon.kill(name)
        return DaemonResult.success(name)

    async def list(self):
        if self.daemon.list_error:
            return DaemonResult.failure(*self.daemon.list_error)
        own = [
            GroupDescriptor(name=name, pm_id=inst.pm_id, pid=inst.pid, status="online")
            for name, instances in self.daemon.groups.items()
            for inst in instances
        ]
        return DaemonResult.success(own + self.daemon.foreign)

    def subscribe(self):
        stream = EventStream(on_close=self.daemon.subscribers.discard)
        self.daemon.subscribers.add(stream)
        self.streams.append(stream)
        return stream

    async def disconnect(self):
        if not self.connected:
            return
        self.connected = False
        self.daemon.releases += 1
        for stream in self.streams:
            stream.close()


class FakeDaemon(ProcessDaemon):
    """In-memory daemon that records requests and publishes events on demand."""

    def __init__(self):
        self.reachable = True
        self.groups: dict[str, list[Instance]] = {}
        self.foreign: list[GroupDescriptor] = []
        self.subscribers: set[EventStream] = set()
        self.launched = []
        self.deleted = []
        self.connects = 0
        self.releases = 0
        self.start_error: Optional[tuple] = None
        self.delete_error: Optional[tuple] = None
        self.list_error: Optional[tuple] = None

    @property
    def open_sessions(self) -> int:
        return self.connects - self.releases

    async def connect(self):
        if not self.reachable:
            raise DaemonConnectionError("connect ECONNREFUSED")
        self.connects += 1
        return FakeSession(self)

    def publish(self, event):
        for stream in list(self.subscribers):
            stream.push(event)

    def output(self, group: str, stream: str, data: str, index: int = 0):
        self.publish(OutputEvent(stream, data, self.groups[group][index]))

    def kill(self, group: str):
        """Tear a group down the way the daemon reports it."""
        instances = self.groups.pop(group)
        for inst in instances:
            self.publish(LifecycleEvent("exit", "stopping", inst))
            self.publish(LifecycleEvent("exit", "stopped", inst))


class RecordingLogger:
    """Captures log(level, record) and raw(line) calls."""

    def __init__(self):
        self.records: list[tuple[LogLevel, dict]] = []
        self.raw_lines: list[str] = []

    def log(self, level, record):
        self.records.append((level, record))

    def raw(self, line):
        self.raw_lines.append(line)

    def at(self, level: LogLevel) -> list[dict]:
        return [record for lvl, record in self.records if lvl is level]

    def types(self) -> list[str]:
        return [record["type"] for _, record in self.records]


async def until(predicate, timeout: float = 5.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def fake_daemon():
    return FakeDaemon()


@pytest.fixture
def recorder():
    return RecordingLogger()


@pytest.fixture
def exits():
    return []


@pytest.fixture
def manager(fake_daemon, recorder, exits):
    return AppLifecycleManager(
        fake_daemon,
        SupervisorConfig(),
        event_logger=recorder,
        exit_process=exits.append,
    )
