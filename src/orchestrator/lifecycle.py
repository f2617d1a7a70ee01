"""
App lifecycle manager - start, stop and list named worker groups.

A supervised ``start`` is the long-lived call an operator blocks on: it
returns only after the run is stopped by an interrupt, or never returns at
all when the daemon kills the group behind the supervisor's back.
"""

import asyncio
import json
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog

from core.config import SupervisorConfig
from core.errors import ListError, StartError, StopError
from core.log import EventLogger, LogLevel
from daemon.protocol import GroupDescriptor, Instance, LaunchSpec, ProcessDaemon
from orchestrator.connection import ControlPlaneConnection
from orchestrator.demux import LogDemultiplexer
from orchestrator.listener import EventBusListener
from orchestrator.shutdown import RunState, ShutdownCoordinator


logger = structlog.get_logger()


@dataclass
class AppGroup:
    """A named cluster of workers started by this supervisor."""
    name: str
    instances: list[Instance] = field(default_factory=list)
    workers: int = 1
    daemon: bool = False
    state: Optional[RunState] = None


class AppLifecycleManager:
    """Starts, stops and lists app groups through the daemon."""

    def __init__(
        self,
        daemon: ProcessDaemon,
        config: Optional[SupervisorConfig] = None,
        event_logger: Any = None,
        exit_process: Callable[[int], Any] = sys.exit,
    ):
        self.config = config or SupervisorConfig()
        self.connection = ControlPlaneConnection(daemon)
        self.event_logger = event_logger or EventLogger()
        self.demux = LogDemultiplexer()
        self._exit_process = exit_process

        self._runs: dict[str, ShutdownCoordinator] = {}

    def _launch_spec(self, name: str, args: Any, workers: int) -> LaunchSpec:
        return LaunchSpec(
            script=self.config.worker_script,
            name=self.config.full_name(name),
            args=json.dumps(args if args is not None else {}),
            exec_mode=self.config.exec_mode,
            instances=workers,
            max_memory_restart=self.config.max_memory_restart,
            interpreter_args=list(self.config.interpreter_args),
        )

    async def start(
        self,
        name: str,
        args: Any = None,
        workers: Optional[int] = None,
        daemon: bool = False,
        interrupt: Optional[asyncio.Event] = None,
    ) -> AppGroup:
        """
        Launch an app group.

        Args:
            name: App name, unique within this supervisor's prefix
            args: JSON-serialisable arguments handed to every worker
            workers: Number of clustered instances (config default if None)
            daemon: Delegate supervision to the daemon and return immediately
            interrupt: Optional token; setting it stops this run manually

        Returns:
            The AppGroup. For supervised runs, only once the run has ended.

        Raises:
            DaemonConnectionError: daemon unreachable
            StartError: daemon rejected the launch
        """
        workers = workers or self.config.default_workers
        session = await self.connection.connect()

        try:
            self.event_logger.log(LogLevel.DEBUG, {
                "type": "child-process-starting",
                "payload": {"request": workers},
            })
            result = await session.start(self._launch_spec(name, args, workers))
            if not result.ok:
                raise StartError(result.error.message, app=name, code=result.error.code)
        except BaseException:
            await session.disconnect()
            raise

        instances = list(result.value)
        self.event_logger.log(LogLevel.INFO, {
            "type": "child-process-started",
            "payload": {"instances": len(instances)},
        })
        app = AppGroup(name=name, instances=instances, workers=workers, daemon=daemon)

        if daemon:
            await session.disconnect()
            return app

        app.state = await self._supervise(name, session, interrupt)
        return app

    async def _supervise(self, name, session, interrupt: Optional[asyncio.Event]) -> RunState:
        coordinator = ShutdownCoordinator(
            name,
            stop=self.stop,
            release=session.disconnect,
            event_logger=self.event_logger,
            exit_process=self._exit_process,
        )
        listener = EventBusListener(
            name,
            self.config.full_name(name),
            coordinator,
            self.event_logger,
            demux=self.demux,
        )
        stream = session.subscribe()
        self._runs[name] = coordinator
        logger.info("run_supervised", app=name, group=listener.group)

        listen_task = asyncio.create_task(listener.run(stream))
        finished_task = asyncio.create_task(coordinator.wait())
        token_task = None
        if interrupt is not None:
            token_task = asyncio.create_task(self._forward_interrupt(interrupt, coordinator))

        try:
            done, _ = await asyncio.wait(
                {listen_task, finished_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if finished_task not in done:
                # A listener failure is a worker-side defect; let it surface
                listen_task.result()
            return await finished_task
        finally:
            self._runs.pop(name, None)
            stream.close()
            for task in (listen_task, finished_task, token_task):
                if task is not None and not task.done():
                    task.cancel()
            # No-op when the manual path already released it
            await session.disconnect()

    @staticmethod
    async def _forward_interrupt(token: asyncio.Event, coordinator: ShutdownCoordinator) -> None:
        await token.wait()
        coordinator.interrupt()

    def interrupt(self, name: str) -> bool:
        """Trigger the manual stop of the supervised run ``name``."""
        coordinator = self._runs.get(name)
        if coordinator is None:
            return False
        coordinator.interrupt()
        return True

    async def stop(self, name: str) -> None:
        """
        Delete every instance of ``name``. Never raises.

        A group that does not exist is logged as DID_NOT_START; any other
        failure is logged as UNEXPECTED with its message.
        """
        try:
            async with self.connection.session() as session:
                result = await session.delete(self.config.full_name(name))
        except Exception as e:
            error = StopError(str(e), app=name)
        else:
            if result.ok:
                return
            error = StopError(result.error.message, app=name, code=result.error.code)

        if error.not_found:
            self.event_logger.log(LogLevel.ERROR, {
                "type": "cannot-stop",
                "payload": {"reason": "DID_NOT_START", "app": name},
            })
            return

        self.event_logger.log(LogLevel.ERROR, {
            "type": "cannot-stop",
            "payload": {"reason": "UNEXPECTED", "message": error.message, "app": name},
        })

    async def list(self) -> list[GroupDescriptor]:
        """Daemon process groups that belong to this supervisor."""
        async with self.connection.session() as session:
            result = await session.list()
        if not result.ok:
            raise ListError(result.error.message, code=result.error.code)
        return [
            group for group in result.value
            if group.name.startswith(self.config.name_prefix)
        ]
