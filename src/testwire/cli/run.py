"""``testwire run``: run tests in a worker and print a results table."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from testwire.adapter import AdapterCore
from testwire.cli._common import build_config, configure_logging, console, err_console, load_tree
from testwire.engine.events import LoadFinishedEvent, RunFinishedEvent
from testwire.engine.protocol import TestMessage

if TYPE_CHECKING:
    from testwire._internal.config import TestwireConfig

_STATE_STYLES = {
    "passed": "green",
    "failed": "red",
    "errored": "red",
    "skipped": "yellow",
}


@dataclass
class RunOutcome:
    """What a CLI run observed.

    Attributes:
        error_message: Why loading or running failed, if it did.
        results: Final state message per test id, in reporting order.
        found_tests: False when loading succeeded but collected nothing.
    """

    error_message: str | None = None
    results: dict[str, TestMessage] = field(default_factory=dict)
    found_tests: bool = True

    @property
    def failed(self) -> list[TestMessage]:
        return [msg for msg in self.results.values() if msg.state in ("failed", "errored")]


async def execute_run(
    config: TestwireConfig,
    test_ids: list[str],
    *,
    show_output: bool = False,
) -> RunOutcome:
    """Load the tree, then run ``test_ids`` (everything when empty)."""
    def _echo(text: str) -> None:
        err_console.print(text, end="", markup=False, highlight=False)

    core = AdapterCore(config, output=_echo if show_output else None)
    outcome = RunOutcome()
    try:
        loaded = await load_tree(core)
        if loaded is None or loaded.error_message is not None:
            outcome.error_message = loaded.error_message if loaded else "Loading did not complete"
            return outcome
        if loaded.suite is None:
            outcome.found_tests = False
            return outcome

        def _on_state(event: object) -> None:
            if isinstance(event, TestMessage) and event.state != "running":
                outcome.results[event.test] = event
            elif isinstance(event, RunFinishedEvent) and event.error_message is not None:
                outcome.error_message = event.error_message

        def _on_load(event: object) -> None:
            # errors raised by the worker during a run arrive as load errors
            if isinstance(event, LoadFinishedEvent) and event.error_message is not None:
                outcome.error_message = event.error_message

        unsubscribe_states = core.hub.test_states_emitter.subscribe(_on_state)
        unsubscribe_load = core.hub.tests_emitter.subscribe(_on_load)
        try:
            await core.run(test_ids or [loaded.suite.id])
        finally:
            unsubscribe_states()
            unsubscribe_load()
    finally:
        await core.close()
    return outcome


def _print_results(outcome: RunOutcome) -> None:
    table = Table(title="Test Results", show_header=True, header_style="bold cyan", expand=True)
    table.add_column("Test")
    table.add_column("Result", justify="center")
    table.add_column("Duration", justify="right")

    counts: dict[str, int] = {}
    for test_id, message in outcome.results.items():
        style = _STATE_STYLES.get(message.state, "white")
        table.add_row(escape(test_id), f"[{style}]{message.state}[/{style}]", message.description or "")
        counts[message.state] = counts.get(message.state, 0) + 1
    console.print(table)

    for message in outcome.failed:
        if message.message:
            console.print(Panel(escape(message.message), title=escape(message.test), border_style="red"))

    summary = ", ".join(f"{count} {state}" for state, count in sorted(counts.items()))
    console.print(f"[bold]Summary:[/bold] {summary or 'no results'}")


def run_cmd(
    files: list[Path] | None = typer.Argument(
        None,
        help="Test files; pytest discovers tests in the working directory when omitted.",
    ),
    tests: list[str] | None = typer.Option(
        None,
        "--test",
        "-t",
        help="Node id of a test or suite to run; repeat for several. Runs everything when omitted.",
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
        help="Enable verbose (DEBUG) logging and show test output.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Emit logs as one JSON object per line.",
    ),
) -> None:
    """Run tests in a worker process and print their results."""
    configure_logging(verbose, json_logs)
    config = build_config(files, cwd)

    outcome = asyncio.run(execute_run(config, list(tests or ()), show_output=verbose))

    if not outcome.found_tests:
        console.print("[yellow]No tests found.[/yellow]")
        return
    if outcome.results:
        _print_results(outcome)
    if outcome.error_message is not None:
        err_console.print(f"[red]Run failed:[/red]\n{escape(outcome.error_message)}")
        raise typer.Exit(code=1)
    if outcome.failed:
        raise typer.Exit(code=1)
    console.print("[green]All tests passed.[/green]")
