"""Main Typer application: entry point for the ``testwire`` CLI."""

from __future__ import annotations

import typer

from testwire import __version__
from testwire.cli.load import load_cmd
from testwire.cli.run import run_cmd

app = typer.Typer(
    name="testwire",
    help="Load and run pytest suites in worker processes.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.command("load", help="Collect tests and print the tree.")(load_cmd)
app.command("run", help="Run tests and print their results.")(run_cmd)


def _version_callback(value: bool) -> None:
    """Print version and exit.

    Args:
        value: True if --version was passed.
    """
    if value:
        typer.echo(f"testwire {__version__}")
        raise typer.Exit


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """testwire: load and run pytest suites in worker processes."""
