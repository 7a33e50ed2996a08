"""Root CLI group and version flag."""

import signal

import click

# Ensure SIGPIPE doesn't silently kill the process (e.g. when stdout
# pipe closes while click.echo is writing).
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)

from codebridge import __version__
from codebridge.commands.exec import exec_
from codebridge.commands.init import init
from codebridge.commands.reset_session import reset_session
from codebridge.commands.run import run
from codebridge.commands.status import status


@click.group()
@click.version_option(version=__version__, prog_name="codebridge")
def cli() -> None:
    """Codebridge — drive a coding-agent CLI from a Telegram group."""


cli.add_command(init)
cli.add_command(run)
cli.add_command(exec_)
cli.add_command(status)
cli.add_command(reset_session)
