"""codebridge init — scaffold a codebridge.yaml in the current directory."""

from __future__ import annotations

from pathlib import Path

import click

CONFIG_FILENAME = "codebridge.yaml"
ENV_EXAMPLE_FILENAME = ".env.example"

TEMPLATE_YAML = """\
# Codebridge configuration
version: "1"

# Coding-agent CLI launch settings
agent:
  cwd: .            # working directory for agent runs
  max_turns: 50     # passed as --max-turns
  # executable: /opt/claude/bin/claude   # skip install-location lookup

# Telegram group the agent reports to (omit to run locally only)
telegram:
  chat_id: "-1001234567890"
  # bot_token_env: CODEBRIDGE_TELEGRAM_TOKEN
  # poll_interval: 3        # seconds between getUpdates polls
  # progress_interval: 2    # minimum seconds between progress edits

# Reasoning model that turns plain chat messages into agent instructions
# (chat mode is disabled when the API key variable is unset)
reasoning:
  model: openai/MiniMax-M2.5
  base_url: https://api.minimaxi.com/v1
  api_key_env: MINIMAX_API_KEY
  label: MiniMax M2.5
  # max_history: 30
  # max_rounds: 5

# Continuation token and run journal live here
state_dir: .codebridge
"""

TEMPLATE_ENV_EXAMPLE = """\
# Secrets referenced from codebridge.yaml.
# Copy this file to .env and fill in your values.

# Dedicated bot created via @BotFather (not shared with other bots)
CODEBRIDGE_TELEGRAM_TOKEN=

# Reasoning backend key (chat orchestration)
MINIMAX_API_KEY=
"""


@click.command()
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite existing codebridge.yaml if it exists.",
)
def init(force: bool) -> None:
    """Scaffold a codebridge.yaml in the current directory."""
    cwd = Path.cwd()
    config_path = cwd / CONFIG_FILENAME
    env_example_path = cwd / ENV_EXAMPLE_FILENAME

    if config_path.exists() and not force:
        raise click.ClickException(
            f"{CONFIG_FILENAME} already exists. Use --force to overwrite."
        )

    try:
        config_path.write_text(TEMPLATE_YAML, encoding="utf-8")
    except OSError as exc:
        raise click.ClickException(f"Cannot write {CONFIG_FILENAME}: {exc}") from exc
    click.echo(f"  Created {CONFIG_FILENAME}")

    if not env_example_path.exists() or force:
        try:
            env_example_path.write_text(TEMPLATE_ENV_EXAMPLE, encoding="utf-8")
        except OSError as exc:
            raise click.ClickException(
                f"Cannot write {ENV_EXAMPLE_FILENAME}: {exc}"
            ) from exc
        click.echo(f"  Created {ENV_EXAMPLE_FILENAME}")
    else:
        click.echo(f"  Skipped {ENV_EXAMPLE_FILENAME} (already exists)")

    click.echo()
    click.echo("Next steps:")
    click.echo(f"  1. Set telegram.chat_id in {CONFIG_FILENAME}")
    click.echo("  2. Copy .env.example to .env and add the bot token and API key")
    click.echo("  3. Run `codebridge run` to connect the bridge")
