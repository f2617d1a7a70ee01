"""Scoped access to the process-control daemon."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from daemon.protocol import DaemonSession, ProcessDaemon


class ControlPlaneConnection:
    """Opens daemon sessions and guarantees they are released."""

    def __init__(self, daemon: ProcessDaemon):
        self.daemon = daemon

    async def connect(self) -> DaemonSession:
        """
        Open a session. The caller owns it and must call ``disconnect()``.

        Raises:
            DaemonConnectionError: the daemon is unreachable
        """
        return await self.daemon.connect()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[DaemonSession]:
        session = await self.connect()
        try:
            yield session
        finally:
            await session.disconnect()
