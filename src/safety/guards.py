"""Memory guard for supervised worker processes."""

import asyncio
from typing import Awaitable, Callable, Optional

import psutil
import structlog


logger = structlog.get_logger()


class MemoryGuard:
    """
    Resident-memory watch for a single worker process.

    Polls the worker's RSS and invokes ``on_exceeded`` once the limit is
    crossed. The guard stops itself after firing; the owner starts a new
    guard for the restarted process.
    """

    def __init__(
        self,
        pid: int,
        max_memory_bytes: int,
        on_exceeded: Callable[[int], Awaitable[None]],
        check_interval_seconds: float = 5.0,
    ):
        self.pid = pid
        self.max_memory_bytes = max_memory_bytes
        self.check_interval = check_interval_seconds
        self._on_exceeded = on_exceeded

        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start memory monitoring."""
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())

    async def stop(self) -> None:
        """Stop memory monitoring."""
        self._running = False
        if self._task and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def get_memory_usage(self) -> Optional[int]:
        """Current RSS of the watched process in bytes, None once it is gone."""
        try:
            return psutil.Process(self.pid).memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    async def _monitor_loop(self) -> None:
        """Background memory monitoring loop."""
        while self._running:
            try:
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break

            current = self.get_memory_usage()
            if current is None:
                break

            if current >= self.max_memory_bytes:
                logger.warning(
                    "worker_memory_limit_exceeded",
                    pid=self.pid,
                    rss=current,
                    limit=self.max_memory_bytes,
                )
                self._running = False
                await self._on_exceeded(current)
