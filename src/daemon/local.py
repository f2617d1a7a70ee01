"""
Local process daemon.

Runs app groups as asyncio child processes of the current interpreter and
publishes their lifecycle and output on an event bus. Follows the pm2
conventions the supervisor expects:

- a worker that exits on its own is restarted (``exit/errored`` then
  ``online``) until ``max_restarts`` is reached
- a worker above its memory threshold is restarted
- deleting a group publishes ``exit/stopping`` then ``exit/stopped`` for
  every worker
"""

import asyncio
import codecs
import os
import sys
from pathlib import Path
from typing import Optional

import psutil
import structlog

from core.config import LocalDaemonConfig, parse_memory
from core.errors import DaemonConnectionError, DaemonErrorCode
from safety.guards import MemoryGuard
from daemon.protocol import (
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


logger = structlog.get_logger()

STREAM_LIMIT = 1024 * 1024
STDERR_CHUNK = 64 * 1024


class _Worker:
    """One managed worker process and its restart loop."""

    def __init__(self, daemon: "LocalDaemon", spec: LaunchSpec, pm_id: int, index: int):
        self.daemon = daemon
        self.spec = spec
        self.pm_id = pm_id
        self.index = index

        self.status = "launching"
        self.restarts = 0

        self._proc: Optional[asyncio.subprocess.Process] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._guard: Optional[MemoryGuard] = None
        self._stopping = False
        self._restarting = False

    @property
    def instance(self) -> Instance:
        return Instance(
            pm_id=self.pm_id,
            name=self.spec.name,
            index=self.index,
            pid=self._proc.pid if self._proc else None,
        )

    def memory(self) -> int:
        if self._proc is None or self._proc.returncode is not None:
            return 0
        try:
            return psutil.Process(self._proc.pid).memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return 0

    async def spawn(self) -> None:
        """Start the process; raises OSError if it cannot be executed."""
        cmd = [sys.executable, *self.spec.interpreter_args, self.spec.script, self.spec.args]
        env = dict(os.environ, WORKER_NAME=self.spec.name, WORKER_INSTANCE=str(self.index))

        self._proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            limit=STREAM_LIMIT,
        )
        self.status = "online"
        self.daemon.publish(LifecycleEvent("online", "online", self.instance))
        logger.debug("worker_online", name=self.spec.name, pm_id=self.pm_id, pid=self._proc.pid)

        self._watch_task = asyncio.create_task(self._watch(self._proc))

        config = self.daemon.config
        if self.spec.max_memory_restart:
            self._guard = MemoryGuard(
                pid=self._proc.pid,
                max_memory_bytes=parse_memory(self.spec.max_memory_restart),
                on_exceeded=self._on_memory_exceeded,
                check_interval_seconds=config.memory_check_interval_seconds,
            )
            await self._guard.start()

    async def stop(self) -> None:
        """Terminate the worker for good."""
        self._stopping = True
        self.status = "stopping"
        self.daemon.publish(LifecycleEvent("exit", "stopping", self.instance))

        # A restart already in flight may hand over to a new process
        while True:
            proc = self._proc
            if proc is not None and proc.returncode is None:
                await self._terminate(proc)
            task = self._watch_task
            if task is None or task.done():
                break
            await task

        if self.status != "stopped":
            self.status = "stopped"
            self.daemon.publish(LifecycleEvent("exit", "stopped", self.instance))

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        self._signal(proc.terminate)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.daemon.config.kill_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("worker_kill", name=self.spec.name, pm_id=self.pm_id)
            self._signal(proc.kill)
            await proc.wait()

    async def _on_memory_exceeded(self, rss: int) -> None:
        proc = self._proc
        if self._stopping or proc is None or proc.returncode is not None:
            return
        logger.info("worker_memory_restart", name=self.spec.name, pm_id=self.pm_id, rss=rss)
        self._restarting = True
        self._signal(proc.terminate)

    @staticmethod
    def _signal(send) -> None:
        try:
            send()
        except ProcessLookupError:
            pass

    async def _watch(self, proc: asyncio.subprocess.Process) -> None:
        instance = self.instance
        await asyncio.gather(
            self._pump_lines(proc.stdout, instance),
            self._pump_chunks(proc.stderr, instance),
        )
        returncode = await proc.wait()

        if self._guard:
            await self._guard.stop()
            self._guard = None

        if self._stopping:
            self.status = "stopped"
            self.daemon.publish(LifecycleEvent("exit", "stopped", instance))
            return

        if self._restarting:
            self._restarting = False
        else:
            self.status = "errored"
            self.daemon.publish(LifecycleEvent("exit", "errored", instance))
            logger.warning(
                "worker_exited",
                name=self.spec.name,
                pm_id=self.pm_id,
                returncode=returncode,
                restarts=self.restarts,
            )
            if self.restarts >= self.daemon.config.max_restarts:
                logger.error("worker_restart_limit_reached", name=self.spec.name, pm_id=self.pm_id)
                return

        self.restarts += 1
        try:
            await self.spawn()
        except OSError as e:
            self.status = "errored"
            logger.error("worker_respawn_failed", name=self.spec.name, pm_id=self.pm_id, error=str(e))

    async def _pump_lines(self, reader: asyncio.StreamReader, instance: Instance) -> None:
        """stdout is line oriented: one structured envelope per line."""
        pending = b""
        while True:
            try:
                line = pending + await reader.readuntil(b"\n")
            except asyncio.LimitOverrunError as e:
                # Line exceeds the reader limit; drain the buffered part
                pending += await reader.read(e.consumed)
                continue
            except asyncio.IncompleteReadError as e:
                line = pending + e.partial
                if line:
                    self._publish_stdout(line, instance)
                break
            pending = b""
            self._publish_stdout(line, instance)

    def _publish_stdout(self, line: bytes, instance: Instance) -> None:
        self.daemon.publish(OutputEvent("stdout", line.decode(errors="replace"), instance))

    async def _pump_chunks(self, reader: asyncio.StreamReader, instance: Instance) -> None:
        """stderr is forwarded per read so multi-line errors stay together."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await reader.read(STDERR_CHUNK)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                self.daemon.publish(OutputEvent("stderr", text.rstrip("\n"), instance))


class LocalSession(DaemonSession):
    """Session on a ``LocalDaemon``."""

    def __init__(self, daemon: "LocalDaemon"):
        self.daemon = daemon
        self._connected = True
        self._streams: list[EventStream] = []

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise DaemonConnectionError("Session already disconnected")
        if not self.daemon.running:
            raise DaemonConnectionError("Local daemon is not running")

    async def start(self, spec: LaunchSpec) -> DaemonResult:
        self._ensure_connected()
        return await self.daemon.start_group(spec)

    async def delete(self, name: str) -> DaemonResult:
        self._ensure_connected()
        return await self.daemon.delete_group(name)

    async def list(self) -> DaemonResult:
        self._ensure_connected()
        return self.daemon.describe()

    def subscribe(self) -> EventStream:
        self._ensure_connected()
        stream = self.daemon.subscribe()
        self._streams.append(stream)
        return stream

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        for stream in self._streams:
            stream.close()
        self._streams.clear()


class LocalDaemon(ProcessDaemon):
    """In-process daemon running workers as child processes."""

    def __init__(self, config: Optional[LocalDaemonConfig] = None):
        self.config = config or LocalDaemonConfig()
        self._groups: dict[str, list[_Worker]] = {}
        self._subscribers: set[EventStream] = set()
        self._next_pm_id = 0
        self._running = True
        self._closed: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._running

    async def connect(self) -> LocalSession:
        if not self._running:
            raise DaemonConnectionError("Local daemon is not running")
        return LocalSession(self)

    def publish(self, event) -> None:
        for stream in list(self._subscribers):
            stream.push(event)

    def subscribe(self) -> EventStream:
        stream = EventStream(on_close=self._subscribers.discard)
        self._subscribers.add(stream)
        return stream

    async def start_group(self, spec: LaunchSpec) -> DaemonResult:
        if spec.name in self._groups:
            return DaemonResult.failure(
                DaemonErrorCode.ALREADY_EXISTS,
                f"process name already exists: {spec.name}",
            )
        if not Path(spec.script).exists():
            return DaemonResult.failure(
                DaemonErrorCode.LAUNCH_FAILED,
                f"script not found: {spec.script}",
            )

        workers: list[_Worker] = []
        self._groups[spec.name] = workers
        try:
            for index in range(spec.instances):
                worker = _Worker(self, spec, self._next_pm_id, index)
                self._next_pm_id += 1
                await worker.spawn()
                workers.append(worker)
        except OSError as e:
            self._groups.pop(spec.name, None)
            for worker in workers:
                await worker.stop()
            return DaemonResult.failure(DaemonErrorCode.LAUNCH_FAILED, str(e))

        logger.info("group_started", name=spec.name, instances=len(workers))
        return DaemonResult.success([w.instance for w in workers])

    async def delete_group(self, name: str) -> DaemonResult:
        workers = self._groups.pop(name, None)
        if workers is None:
            return DaemonResult.failure(DaemonErrorCode.NOT_FOUND, "process name not found")

        await asyncio.gather(*(w.stop() for w in workers))
        logger.info("group_deleted", name=name, instances=len(workers))
        return DaemonResult.success(name)

    def describe(self) -> DaemonResult:
        return DaemonResult.success([
            GroupDescriptor(
                name=name,
                pm_id=w.pm_id,
                pid=w.instance.pid,
                status=w.status,
                restarts=w.restarts,
                memory=w.memory(),
            )
            for name, workers in self._groups.items()
            for w in workers
        ])

    async def shutdown(self) -> None:
        """Tear every group down and refuse new connections."""
        if not self._running:
            return
        logger.info("local_daemon_stopping", groups=len(self._groups))
        self._running = False
        for name in list(self._groups):
            await self.delete_group(name)
        for stream in list(self._subscribers):
            stream.close()
        self._get_closed().set()
        logger.info("local_daemon_stopped")

    async def wait_closed(self) -> None:
        await self._get_closed().wait()

    def _get_closed(self) -> asyncio.Event:
        if self._closed is None:
            self._closed = asyncio.Event()
        return self._closed
