"""Helpers shared by the CLI commands."""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.console import Console

from testwire._internal.config import load_config
from testwire._internal.errors import ConfigError
from testwire._internal.logging import setup_logging
from testwire.engine.events import LoadFinishedEvent

if TYPE_CHECKING:
    from testwire._internal.config import TestwireConfig
    from testwire.adapter import AdapterCore

console = Console()
err_console = Console(stderr=True)


def configure_logging(verbose: bool, json_logs: bool) -> None:
    setup_logging(logging.DEBUG if verbose else logging.WARNING, json_format=json_logs)


def build_config(files: list[Path] | None, cwd: Path | None) -> TestwireConfig:
    """Environment configuration with the command-line overrides applied.

    Raises:
        typer.Exit: If the configuration is invalid.
    """
    try:
        config = load_config()
        changes: dict[str, object] = {}
        if cwd is not None:
            changes["cwd"] = str(cwd.resolve())
        if files:
            changes["files"] = tuple(str(file.resolve()) for file in files)
        if changes:
            config = dataclasses.replace(config, **changes)  # type: ignore[arg-type]
            config.validate()
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    return config


async def load_tree(core: AdapterCore) -> LoadFinishedEvent | None:
    """Load the tests of ``core`` and return the event that ended the load."""
    finished: list[LoadFinishedEvent] = []

    def _on_load(event: object) -> None:
        if isinstance(event, LoadFinishedEvent):
            finished.append(event)

    unsubscribe = core.hub.tests_emitter.subscribe(_on_load)
    try:
        await core.load()
    finally:
        unsubscribe()
    return finished[0] if finished else None
