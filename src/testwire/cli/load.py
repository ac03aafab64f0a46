"""``testwire load``: collect tests in a worker and print the tree."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.markup import escape
from rich.tree import Tree

from testwire.adapter import AdapterCore
from testwire.cli._common import build_config, configure_logging, console, err_console, load_tree
from testwire.engine.protocol import SuiteInfo

if TYPE_CHECKING:
    from testwire._internal.config import TestwireConfig
    from testwire.engine.events import LoadFinishedEvent


def _add_children(branch: Tree, suite: SuiteInfo) -> int:
    """Add the children of ``suite`` to ``branch``; return the number of tests added."""
    count = 0
    for child in suite.children:
        if isinstance(child, SuiteInfo):
            count += _add_children(branch.add(f"[bold]{escape(child.label)}[/bold]"), child)
            continue
        label = escape(child.label)
        if child.line is not None:
            label += f" [dim]line {child.line + 1}[/dim]"
        if child.skipped:
            label += " [yellow](skipped)[/yellow]"
        branch.add(label)
        count += 1
    return count


def render_tree(suite: SuiteInfo) -> tuple[Tree, int]:
    tree = Tree(f"[bold cyan]{escape(suite.id)}[/bold cyan]")
    return tree, _add_children(tree, suite)


async def _load(config: TestwireConfig) -> LoadFinishedEvent | None:
    core = AdapterCore(config)
    try:
        return await load_tree(core)
    finally:
        await core.close()


def load_cmd(
    files: list[Path] | None = typer.Argument(
        None,
        help="Test files; pytest discovers tests in the working directory when omitted.",
    ),
    cwd: Path | None = typer.Option(
        None,
        "--cwd",
        "-C",
        help="Working directory of the worker.",
        file_okay=False,
        dir_okay=True,
        exists=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose (DEBUG) logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Emit logs as one JSON object per line.",
    ),
) -> None:
    """Collect tests in a worker process and print the test tree."""
    configure_logging(verbose, json_logs)
    config = build_config(files, cwd)

    result = asyncio.run(_load(config))
    if result is None:
        err_console.print("[red]Loading did not complete.[/red]")
        raise typer.Exit(code=1)
    if result.error_message is not None:
        err_console.print(f"[red]Loading failed:[/red]\n{escape(result.error_message)}")
        raise typer.Exit(code=1)
    if result.suite is None:
        console.print("[yellow]No tests found.[/yellow]")
        return

    tree, count = render_tree(result.suite)
    console.print(tree)
    console.print(f"[green]{count} test(s) collected.[/green]")
