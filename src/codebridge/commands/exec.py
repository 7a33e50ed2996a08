"""codebridge exec — run the coding agent once and print its answer."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from codebridge.agent.supervisor import ExecutionResult, SupervisorError
from codebridge.commands._support import (
    config_option,
    configure_logging,
    load_or_exit,
    verbose_option,
)
from codebridge.config.models import BridgeConfig
from codebridge.journal.recorder import JournalRecorder
from codebridge.service import CodeModeService


@click.command(name="exec")
@click.argument("prompt")
@config_option
@click.option("--cwd", type=click.Path(), default=None, help="Working directory.")
@click.option("--max-turns", type=click.IntRange(min=1), default=None, help="Turn budget.")
@verbose_option
def exec_(
    prompt: str,
    config_file: str | None,
    cwd: str | None,
    max_turns: int | None,
    verbose: bool,
) -> None:
    """Run PROMPT through the coding agent and print the summary."""
    configure_logging(verbose)
    config = load_or_exit(config_file)

    try:
        result = asyncio.run(_exec(config, prompt, cwd, max_turns))
    except SupervisorError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    if result.summary:
        click.echo(result.summary)
    if not result.success:
        if result.error:
            click.echo(f"Error: {result.error}", err=True)
        raise SystemExit(1)


async def _exec(
    config: BridgeConfig,
    prompt: str,
    cwd: str | None,
    max_turns: int | None,
) -> ExecutionResult:
    journal = JournalRecorder(Path(config.state_dir) / "journal")
    service = CodeModeService(config, journal=journal)
    try:
        return await service.run_to_completion(prompt, cwd=cwd, max_turns=max_turns)
    finally:
        await service.close()
        journal.close()
