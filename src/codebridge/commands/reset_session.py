"""codebridge reset-session — forget the stored continuation token."""

from __future__ import annotations

from pathlib import Path

import click

from codebridge.commands._support import config_option, load_or_exit
from codebridge.state import TokenStore


@click.command(name="reset-session")
@config_option
def reset_session(config_file: str | None) -> None:
    """Make the next agent run start a new conversation."""
    config = load_or_exit(config_file)
    store = TokenStore(Path(config.state_dir))
    token = store.load()
    store.clear()
    if token:
        click.echo(f"Cleared session {token}.")
    else:
        click.echo("No stored session.")
