"""Routes daemon events for one supervised app group."""

from typing import Any, AsyncIterable, Optional

import structlog

from core.log import LogLevel
from daemon.protocol import DaemonEvent, LifecycleEvent, OutputEvent
from orchestrator.demux import LogDemultiplexer, LogRecord
from orchestrator.shutdown import ShutdownCoordinator


logger = structlog.get_logger()


class EventBusListener:
    """
    Consumes the daemon event stream of a supervised run.

    Output events go through the demultiplexer to the event logger.
    Lifecycle events are checked against the run's shutdown gate: an exit
    the operator did not ask for is reported as FATAL and ends the process.
    """

    def __init__(
        self,
        name: str,
        group: str,
        coordinator: ShutdownCoordinator,
        event_logger: Any,
        demux: Optional[LogDemultiplexer] = None,
    ):
        self.name = name
        self.group = group
        self.coordinator = coordinator
        self._log = event_logger
        self.demux = demux or LogDemultiplexer()

    async def run(self, events: AsyncIterable[DaemonEvent]) -> None:
        logger.debug("listener_started", app=self.name)
        async for event in events:
            self.handle(event)
        logger.debug("listener_stopped", app=self.name)

    def handle(self, event: DaemonEvent) -> None:
        if event.instance.name != self.group:
            return
        if isinstance(event, LifecycleEvent):
            self._on_lifecycle(event)
        elif isinstance(event, OutputEvent):
            self._on_output(event)

    def _on_lifecycle(self, event: LifecycleEvent) -> None:
        # Expected byproduct of a manual stop, or the run is already over
        if self.coordinator.gate or self.coordinator.finished:
            return
        if event.event != "exit":
            return

        if event.status == "stopping":
            self._log.log(LogLevel.FATAL, {
                "type": "begin-shutdown",
                "payload": {"name": self.name, "forced": True},
            })
        elif event.status == "stopped":
            self._log.log(LogLevel.FATAL, {
                "type": "complete-shutdown",
                "payload": {"name": self.name, "forced": True},
            })
            self.coordinator.force_exit()

    def _on_output(self, event: OutputEvent) -> None:
        for item in self.demux.demultiplex(event.stream, event.data, event.instance):
            if isinstance(item, LogRecord):
                self._log.log(item.level, item.to_record())
            else:
                self._log.raw(item.line)
