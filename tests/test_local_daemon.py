"""Tests for the local daemon with real child processes."""

import asyncio
import os
import sys
import textwrap

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from conftest import until
from core.config import LocalDaemonConfig, SupervisorConfig
from core.errors import DaemonConnectionError, DaemonErrorCode
from core.log import LogLevel
from daemon.local import LocalDaemon
from daemon.protocol import LaunchSpec, LifecycleEvent, OutputEvent
from orchestrator.lifecycle import AppLifecycleManager
from orchestrator.shutdown import RunState


SERVER = textwrap.dedent("""
    import json, sys, time
    print("hello from worker")
    print(json.dumps({"type": "tick", "level": "INFO", "payload": {"n": 1}}))
    sys.stdout.flush()
    sys.stderr.write("Error: boom\\nstack1\\n")
    sys.stderr.flush()
    time.sleep(60)
""")

CRASHER = "import sys; sys.exit(3)\n"

LONG_LINE = textwrap.dedent("""
    import sys, time
    sys.stdout.write("x" * (2 * 1024 * 1024) + "\\n")
    sys.stdout.write("after\\n")
    sys.stdout.flush()
    time.sleep(60)
""")


@pytest.fixture
def server_script(tmp_path):
    path = tmp_path / "server.py"
    path.write_text(SERVER)
    return str(path)


@pytest.fixture
def crasher_script(tmp_path):
    path = tmp_path / "crasher.py"
    path.write_text(CRASHER)
    return str(path)


@pytest.fixture
async def daemon():
    daemon = LocalDaemon(LocalDaemonConfig(max_restarts=1, kill_timeout_seconds=2))
    yield daemon
    await daemon.shutdown()


def spec_for(script, name="heq-server-api", instances=1, max_memory_restart="100M"):
    return LaunchSpec(
        script=script,
        name=name,
        args="{}",
        instances=instances,
        max_memory_restart=max_memory_restart,
        interpreter_args=["-u"],
    )


class Collector:
    def __init__(self, stream):
        self.events = []
        self._task = asyncio.create_task(self._run(stream))

    async def _run(self, stream):
        async for event in stream:
            self.events.append(event)

    def output(self, stream_name):
        return [e.data for e in self.events if isinstance(e, OutputEvent) and e.stream == stream_name]

    def statuses(self):
        return [(e.event, e.status) for e in self.events if isinstance(e, LifecycleEvent)]


class TestLocalDaemon:
    """Test the daemon surface against real workers."""

    @pytest.mark.asyncio
    async def test_start_list_delete(self, daemon, server_script):
        session = await daemon.connect()
        events = Collector(session.subscribe())

        result = await session.start(spec_for(server_script, instances=2))
        assert result.ok
        assert [i.index for i in result.value] == [0, 1]
        assert all(i.pid for i in result.value)

        await until(lambda: len(events.output("stdout")) >= 4, timeout=15)
        assert "hello from worker\n" in events.output("stdout")
        assert any(line.startswith('{"type"') for line in events.output("stdout"))

        listed = (await session.list()).value
        assert {g.name for g in listed} == {"heq-server-api"}
        assert {g.status for g in listed} == {"online"}

        deleted = await session.delete("heq-server-api")
        assert deleted.ok
        await until(lambda: events.statuses().count(("exit", "stopped")) == 2)

        statuses = events.statuses()
        assert statuses.index(("exit", "stopping")) < statuses.index(("exit", "stopped"))
        assert (await session.list()).value == []
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_stderr_kept_together(self, daemon, server_script):
        session = await daemon.connect()
        events = Collector(session.subscribe())

        await session.start(spec_for(server_script))
        await until(lambda: events.output("stderr"), timeout=15)

        assert events.output("stderr")[0].startswith("Error: boom")
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_delete_unknown(self, daemon):
        session = await daemon.connect()
        result = await session.delete("heq-server-ghost")

        assert not result.ok
        assert result.error.code is DaemonErrorCode.NOT_FOUND
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_duplicate_name(self, daemon, server_script):
        session = await daemon.connect()
        await session.start(spec_for(server_script))
        result = await session.start(spec_for(server_script))

        assert result.error.code is DaemonErrorCode.ALREADY_EXISTS
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_missing_script(self, daemon, tmp_path):
        session = await daemon.connect()
        result = await session.start(spec_for(str(tmp_path / "missing.py")))

        assert result.error.code is DaemonErrorCode.LAUNCH_FAILED
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_crashed_worker_restarted(self, daemon, crasher_script):
        """Workers exiting on their own are restarted up to max_restarts."""
        session = await daemon.connect()
        events = Collector(session.subscribe())

        await session.start(spec_for(crasher_script))
        await until(lambda: events.statuses().count(("exit", "errored")) == 2, timeout=15)

        assert events.statuses().count(("online", "online")) == 2
        [group] = (await session.list()).value
        assert group.restarts == 1
        assert group.status == "errored"
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_long_stdout_line_keeps_pumping(self, daemon, tmp_path):
        """A line past the reader limit is still delivered, and so is what follows."""
        script = tmp_path / "long_line.py"
        script.write_text(LONG_LINE)
        session = await daemon.connect()
        events = Collector(session.subscribe())

        await session.start(spec_for(str(script)))
        await until(lambda: "after\n" in events.output("stdout"), timeout=15)

        [long_line, after] = events.output("stdout")
        assert long_line == "x" * (2 * 1024 * 1024) + "\n"
        assert after == "after\n"
        [group] = (await session.list()).value
        assert group.status == "online"
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_memory_threshold_restarts_worker(self, server_script):
        """A worker over its memory threshold is restarted in place, not errored."""
        daemon = LocalDaemon(LocalDaemonConfig(kill_timeout_seconds=2, memory_check_interval_seconds=0.05))
        try:
            session = await daemon.connect()
            events = Collector(session.subscribe())

            await session.start(spec_for(server_script, max_memory_restart="1K"))
            await until(lambda: events.statuses().count(("online", "online")) >= 2, timeout=15)

            online = [e for e in events.events if isinstance(e, LifecycleEvent) and e.event == "online"]
            assert len({e.instance.pm_id for e in online}) == 1
            assert online[0].instance.pid != online[1].instance.pid
            assert ("exit", "errored") not in events.statuses()
            [group] = (await session.list()).value
            assert group.restarts >= 1
            await session.disconnect()
        finally:
            await daemon.shutdown()

    @pytest.mark.asyncio
    async def test_disconnect_closes_streams(self, daemon):
        session = await daemon.connect()
        stream = session.subscribe()
        await session.disconnect()

        assert stream.closed
        with pytest.raises(DaemonConnectionError):
            await session.list()

    @pytest.mark.asyncio
    async def test_shutdown_refuses_connections(self, daemon):
        await daemon.shutdown()

        with pytest.raises(DaemonConnectionError):
            await daemon.connect()


class TestSupervisedLocalRun:
    """Supervise real workers through the lifecycle manager."""

    @pytest.fixture
    def local_manager(self, daemon, server_script, recorder, exits):
        config = SupervisorConfig(worker_script=server_script)
        return AppLifecycleManager(daemon, config, recorder, exit_process=exits.append)

    @pytest.mark.asyncio
    async def test_manual_stop(self, local_manager, recorder, exits):
        run = asyncio.create_task(local_manager.start("api", workers=2))
        await until(lambda: "server-log" in recorder.types(), timeout=15)
        await until(lambda: "tick" in recorder.types(), timeout=15)

        assert local_manager.interrupt("api")
        app = await asyncio.wait_for(run, 15)

        assert app.state is RunState.STOPPED
        assert exits == []
        assert recorder.at(LogLevel.FATAL) == []
        assert await local_manager.list() == []

    @pytest.mark.asyncio
    async def test_daemon_teardown_is_forced_exit(self, local_manager, daemon, recorder, exits):
        run = asyncio.create_task(local_manager.start("api"))
        await until(lambda: "server-log" in recorder.types(), timeout=15)

        await daemon.shutdown()
        app = await asyncio.wait_for(run, 15)

        assert app.state is RunState.FORCED_EXIT
        assert exits == [1]
        assert [r["type"] for r in recorder.at(LogLevel.FATAL)] == [
            "begin-shutdown",
            "complete-shutdown",
        ]
