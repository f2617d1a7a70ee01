"""
Shutdown coordination for one supervised run.

Two paths end a run:

- manual: an operator interrupt closes the gate, stops the group through
  the lifecycle manager and resolves the run as STOPPED
- forced: the daemon tears the group down on its own; the listener reports
  it and the supervising process exits with status 1

The gate is set synchronously inside ``interrupt()``, before any await, so
lifecycle events produced by the manual stop can never take the forced path.
"""

import asyncio
import sys
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from core.log import LogLevel


logger = structlog.get_logger()


class RunState(Enum):
    """Supervised run states."""
    RUNNING = "running"
    MANUAL_STOP_IN_PROGRESS = "manual_stop_in_progress"
    STOPPED = "stopped"
    FORCED_EXIT = "forced_exit"


TERMINAL_STATES = (RunState.STOPPED, RunState.FORCED_EXIT)


class ShutdownCoordinator:
    """State machine reconciling operator stops with forced cluster death."""

    def __init__(
        self,
        name: str,
        stop: Callable[[str], Awaitable[None]],
        release: Callable[[], Awaitable[None]],
        event_logger: Any,
        exit_process: Callable[[int], Any] = sys.exit,
    ):
        self.name = name
        self._stop = stop
        self._release = release
        self._log = event_logger
        self._exit_process = exit_process

        self._gate = False
        self._state = RunState.RUNNING
        self._finished = asyncio.Event()
        self._manual_task: Optional[asyncio.Task] = None

    @property
    def gate(self) -> bool:
        """True once an operator-initiated stop has begun. Never reset."""
        return self._gate

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def finished(self) -> bool:
        return self._state in TERMINAL_STATES

    def interrupt(self) -> Optional[asyncio.Task]:
        """Begin the manual stop. Only the first interrupt of a run counts."""
        if self._state is not RunState.RUNNING:
            logger.debug("interrupt_ignored", app=self.name, state=self._state.value)
            return None

        self._gate = True
        self._state = RunState.MANUAL_STOP_IN_PROGRESS
        self._manual_task = asyncio.ensure_future(self._manual_stop())
        return self._manual_task

    async def _manual_stop(self) -> None:
        try:
            self._log.log(LogLevel.INFO, {
                "type": "begin-shutdown",
                "payload": {"name": self.name, "forced": False},
            })
            await self._stop(self.name)
            self._log.log(LogLevel.INFO, {
                "type": "complete-shutdown",
                "payload": {"name": self.name, "forced": False},
            })
            await self._release()
        except BaseException:
            # wake wait(), which re-raises from the task
            self._finished.set()
            raise
        self._finish(RunState.STOPPED)

    def force_exit(self) -> None:
        """Terminal forced path: exit the supervising process with status 1."""
        if self._gate or self._state is not RunState.RUNNING:
            return
        self._finish(RunState.FORCED_EXIT)
        self._exit_process(1)

    async def wait(self) -> RunState:
        """Wait for the run to reach a terminal state."""
        await self._finished.wait()
        if self._manual_task is not None:
            await self._manual_task
        return self._state

    def _finish(self, state: RunState) -> None:
        self._state = state
        self._finished.set()
        logger.debug("run_finished", app=self.name, state=state.value)
