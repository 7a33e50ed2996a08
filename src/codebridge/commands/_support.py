"""Helpers shared by the codebridge commands."""

from __future__ import annotations

import logging
from pathlib import Path

import click

from codebridge.config.models import BridgeConfig
from codebridge.config.parser import ConfigError, load_config

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool) -> None:
    """DEBUG with ``-v``, otherwise only warnings and errors."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )


def load_or_exit(config_file: str | None) -> BridgeConfig:
    """Load the config or print the problem and exit with status 1."""
    try:
        return load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc


config_option = click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
verbose_option = click.option(
    "-v", "--verbose", is_flag=True, help="Enable debug logging."
)
