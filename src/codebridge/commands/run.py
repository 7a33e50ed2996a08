"""codebridge run — connect the Telegram bridge and serve until interrupted."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path

import click

from codebridge.chat.telegram import BridgeInitError
from codebridge.commands._support import (
    config_option,
    configure_logging,
    load_or_exit,
    verbose_option,
)
from codebridge.config.models import BridgeConfig
from codebridge.journal.recorder import JournalRecorder
from codebridge.service import CodeModeService

logger = logging.getLogger(__name__)


class EchoListener:
    """Mirrors agent output to the terminal."""

    def on_output(self, stream: str, data: str, pid: int | None) -> None:
        click.echo(data, nl=False, err=stream == "stderr")

    def on_exit(self, exit_code: int | None, signal: int | None, pid: int | None) -> None:
        detail = f"signal {signal}" if signal is not None else f"code {exit_code}"
        click.echo(f"[agent {pid} exited with {detail}]", err=True)

    def on_error(self, message: str, pid: int | None) -> None:
        click.echo(f"[agent {pid} error] {message}", err=True)

    def on_continuation_token(self, token: str | None) -> None:
        logger.debug("Continuation token is now %s", token)

    def on_remote_command(self, text: str) -> None:
        click.echo(f"[telegram] {text}")


@click.command()
@config_option
@click.option("--cwd", type=click.Path(), default=None, help="Working directory override.")
@verbose_option
def run(config_file: str | None, cwd: str | None, verbose: bool) -> None:
    """Connect the Telegram bridge and serve until Ctrl+C."""
    configure_logging(verbose)
    config = load_or_exit(config_file)

    if config.telegram is None:
        click.echo("Error: no `telegram` section in the config.", err=True)
        raise SystemExit(1)
    token = os.environ.get(config.telegram.bot_token_env, "")
    if not token:
        click.echo(
            f"Error: {config.telegram.bot_token_env} is not set "
            "(create a dedicated bot via @BotFather).",
            err=True,
        )
        raise SystemExit(1)

    code = asyncio.run(_serve(config, token, cwd))
    if code:
        raise SystemExit(code)


async def _serve(config: BridgeConfig, token: str, cwd: str | None) -> int:
    assert config.telegram is not None
    journal = JournalRecorder(Path(config.state_dir) / "journal")
    service = CodeModeService(config, listener=EchoListener(), journal=journal)
    shutdown_event = asyncio.Event()

    try:
        try:
            username = await service.enable_bridge(token, config.telegram.chat_id, cwd)
        except BridgeInitError as exc:
            click.echo(f"Error: {exc}", err=True)
            return 1

        click.echo(f"Connected as @{username} to chat {config.telegram.chat_id}.")
        click.echo(f"Journal: {journal.path}")
        click.echo("Press Ctrl+C to stop.")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, shutdown_event.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers.
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(shutdown_event.set))

        await shutdown_event.wait()
        click.echo("\nShutting down…", err=True)
        return 0
    finally:
        await service.close()
        journal.close()
