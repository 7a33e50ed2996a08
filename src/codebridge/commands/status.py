"""codebridge status — agent CLI availability and the stored continuation token."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from codebridge.agent.supervisor import probe_agent_version
from codebridge.commands._support import config_option, load_or_exit
from codebridge.state import TokenStore


@click.command()
@config_option
def status(config_file: str | None) -> None:
    """Show whether the agent CLI is installed and which session is resumed."""
    config = load_or_exit(config_file)
    installed, version = asyncio.run(probe_agent_version(config.agent.executable))

    if installed:
        click.echo(f"Agent CLI:     installed ({version or 'unknown version'})")
    else:
        click.echo("Agent CLI:     not found")
    token = TokenStore(Path(config.state_dir)).load()
    click.echo(f"Session:       {token or '(none, next run starts fresh)'}")
    click.echo(f"Working dir:   {config.agent.cwd}")
    if config.telegram is not None:
        click.echo(f"Telegram chat: {config.telegram.chat_id}")
