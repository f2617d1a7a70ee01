"""
Main entry point for the cluster supervisor.

Starts a worker app group on the local daemon and supervises it until an
operator interrupt (SIGINT, exit 0) or a forced cluster exit (exit 1).
"""

import asyncio
import json
import os
import signal
import sys
from typing import Any, Optional

import click
import structlog
from dotenv import load_dotenv

from core.config import ConfigLoader, SupervisorConfig
from core.errors import ConfigError, SupervisorError
from core.log import EventLogger, configure_logging
from daemon.local import LocalDaemon
from orchestrator.lifecycle import AppLifecycleManager


logger = structlog.get_logger()


class Application:
    """Main application container."""

    def __init__(self, config: SupervisorConfig):
        self.config = config
        self.daemon = LocalDaemon(config.daemon)
        self.manager = AppLifecycleManager(self.daemon, config, EventLogger())

    async def supervise(self, name: str, args: Any, workers: Optional[int]) -> int:
        """Run until SIGINT stops the group or the cluster dies."""
        loop = asyncio.get_running_loop()

        def interrupt_handler():
            print("")
            logger.info("shutdown_signal_received", app=name)
            if not self.manager.interrupt(name):
                logger.warning("interrupt_ignored", app=name, reason="run not active")

        def terminate_handler():
            # Daemon teardown the supervisor did not ask for
            logger.info("terminate_signal_received", app=name)
            asyncio.ensure_future(self.daemon.shutdown())

        loop.add_signal_handler(signal.SIGINT, interrupt_handler)
        loop.add_signal_handler(signal.SIGTERM, terminate_handler)
        try:
            await self.manager.start(name, args, workers)
        finally:
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)
            await self.daemon.shutdown()
        return 0

    async def delegate(self, name: str, args: Any, workers: Optional[int]) -> int:
        """Start in daemon mode and keep the local daemon alive until a signal."""
        loop = asyncio.get_running_loop()

        app = await self.manager.start(name, args, workers, daemon=True)
        logger.info("app_delegated", app=name, instances=len(app.instances))

        def signal_handler():
            logger.info("shutdown_signal_received", app=name)
            asyncio.ensure_future(self.daemon.shutdown())

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

        await self.daemon.wait_closed()
        return 0


@click.group()
@click.option(
    "--config",
    "config_path",
    default=lambda: os.getenv("CONFIG_PATH"),
    help="Supervisor config file (YAML or JSON). Defaults to $CONFIG_PATH.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str]) -> None:
    """Supervise clusters of worker processes."""
    try:
        config = ConfigLoader().load(config_path)
    except ConfigError as e:
        raise click.ClickException(e.message)

    configure_logging(config.logging.level, config.logging.format)
    ctx.obj = config


@cli.command()
@click.argument("name")
@click.option("--workers", "-w", type=click.IntRange(min=1), default=None,
              help="Number of clustered worker instances.")
@click.option("--args", "args_json", default="{}", help="JSON arguments passed to every worker.")
@click.option("--daemon", is_flag=True, help="Delegate supervision to the daemon.")
@click.pass_obj
def start(config: SupervisorConfig, name: str, workers: Optional[int], args_json: str, daemon: bool) -> None:
    """Start app group NAME and supervise it."""
    try:
        args = json.loads(args_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--args")

    app = Application(config)
    runner = app.delegate if daemon else app.supervise
    try:
        code = asyncio.run(runner(name, args, workers))
    except SupervisorError as e:
        logger.error("start_failed", app=name, error=e.to_dict())
        sys.exit(1)
    sys.exit(code)


@cli.command(name="config")
@click.pass_obj
def show_config(config: SupervisorConfig) -> None:
    """Print the effective configuration."""
    click.echo(config.model_dump_json(indent=2))


def main() -> None:
    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
