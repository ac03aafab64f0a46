"""pytest plugins used by the worker to collect and report tests."""

from __future__ import annotations

import os
import re
import time
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from testwire.engine.protocol import (
    Decoration,
    SuiteInfo,
    SuiteStateMessage,
    TestInfo,
    TestMessage,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Collection, Iterable

    from testwire.engine.protocol import WorkerEvent


# =============================================================================
# Collection
# =============================================================================


class CollectorPlugin:
    """Remembers the collected items and the collection errors of one session."""

    def __init__(self) -> None:
        self.items: list[pytest.Item] = []
        self.errors: list[str] = []

    def pytest_collectreport(self, report: pytest.CollectReport) -> None:
        if report.failed:
            self.errors.append(f"{report.nodeid or 'collection'}:\n{report.longreprtext}")

    def pytest_collection_finish(self, session: pytest.Session) -> None:
        self.items = list(session.items)


class _LineFinder:
    """Finds the first line mentioning a name, for nodes without a location."""

    def __init__(self) -> None:
        self._cache: dict[str, list[str]] = {}

    def find(self, file: str | None, needle: str) -> int | None:
        if not file:
            return None
        lines = self._cache.get(file)
        if lines is None:
            try:
                lines = Path(file).read_text(encoding="utf-8").splitlines()
            except OSError:
                lines = []
            self._cache[file] = lines
        pattern = re.compile(rf"\b{re.escape(needle)}\b")
        for index, line in enumerate(lines):
            if pattern.search(line):
                return index
        return None


def _node_location(node: pytest.Item | pytest.Collector, use_reportinfo: bool) -> int | None:
    if not use_reportinfo:
        return None
    reportinfo = getattr(node, "reportinfo", None)
    if reportinfo is None:
        return None
    try:
        _path, lineno, _name = reportinfo()
    except Exception:  # noqa: BLE001
        return None
    return lineno if isinstance(lineno, int) else None


def build_tree(
    items: Iterable[pytest.Item],
    *,
    use_reportinfo: bool = True,
    changed_files: Collection[str] = (),
) -> SuiteInfo:
    """Convert collected items into a suite tree.

    The root holds one suite per module; classes become nested suites and
    items become tests. Node ids are pytest node ids.

    Args:
        items: Items from ``session.items``, in collection order.
        use_reportinfo: Take line numbers from pytest's own locations;
            otherwise search the file for the node's name.
        changed_files: Files whose nodes are flagged as hot-reloaded.
    """
    finder = _LineFinder()
    # suite node id -> (SuiteInfo fields, ordered children ids)
    suites: dict[str, dict[str, object]] = {}
    children: dict[str, list[str]] = {"": []}
    tests: dict[str, TestInfo] = {}

    for item in items:
        parent_id = ""
        chain = [n for n in item.listchain() if isinstance(n, (pytest.Module, pytest.Class))]
        for collector in chain:
            if collector.nodeid not in suites:
                file = str(collector.path)
                line = _node_location(collector, use_reportinfo)
                if line is None and isinstance(collector, pytest.Class):
                    line = finder.find(file, collector.name)
                label = collector.path.name if isinstance(collector, pytest.Module) else collector.name
                suites[collector.nodeid] = {
                    "id": collector.nodeid,
                    "label": label,
                    "file": file,
                    "line": line,
                    "hot_reload": file in changed_files,
                }
                children[collector.nodeid] = []
                children[parent_id].append(collector.nodeid)
            parent_id = collector.nodeid

        file = str(item.path)
        line = _node_location(item, use_reportinfo)
        if line is None:
            line = finder.find(file, getattr(item, "originalname", item.name))
        tests[item.nodeid] = TestInfo(
            id=item.nodeid,
            label=item.name,
            file=file,
            line=line,
            skipped=item.get_closest_marker("skip") is not None,
            hot_reload=file in changed_files,
        )
        children[parent_id].append(item.nodeid)

    def _materialise(node_id: str) -> SuiteInfo | TestInfo:
        if node_id in tests:
            return tests[node_id]
        fields = suites[node_id]
        return SuiteInfo(
            id=str(fields["id"]),
            label=str(fields["label"]),
            children=tuple(_materialise(child) for child in children[node_id]),
            file=fields["file"],  # type: ignore[arg-type]
            line=fields["line"],  # type: ignore[arg-type]
            hot_reload=bool(fields["hot_reload"]),
        )

    return SuiteInfo(
        id="root",
        label="pytest",
        children=tuple(_materialise(child) for child in children[""]),
    )


# =============================================================================
# Reporting
# =============================================================================


class ReporterPlugin:
    """Streams suite and test state changes of a run as protocol events.

    A test's final state is sent once its teardown has run, so a failing
    teardown turns a passed test into an errored one.

    Args:
        send: Receives every event, in order.
        selected: Node ids to keep; other collected items are deselected.
            None runs everything collected.
    """

    def __init__(
        self,
        send: Callable[[WorkerEvent], None],
        selected: Collection[str] | None = None,
    ) -> None:
        self._send = send
        self._selected = frozenset(selected) if selected is not None else None
        self._rootpath: Path | None = None
        self._current_suite: str | None = None
        self._suite_started = 0.0
        self._pending: dict[str, TestMessage] = {}
        self._files: dict[str, str] = {}

    def pytest_configure(self, config: pytest.Config) -> None:
        self._rootpath = config.rootpath

    def pytest_collection_modifyitems(self, config: pytest.Config, items: list[pytest.Item]) -> None:
        if self._selected is None:
            return
        keep = [item for item in items if item.nodeid in self._selected]
        dropped = [item for item in items if item.nodeid not in self._selected]
        if dropped:
            config.hook.pytest_deselected(items=dropped)
            items[:] = keep

    def pytest_runtest_logstart(self, nodeid: str, location: tuple[str, int | None, str]) -> None:
        suite_id = nodeid.split("::", 1)[0]
        if suite_id != self._current_suite:
            self._complete_suite()
            self._current_suite = suite_id
            self._suite_started = time.monotonic()
            self._send(SuiteStateMessage(suite=suite_id, state="running"))
        if self._rootpath is not None:
            self._files[nodeid] = os.path.normpath(self._rootpath / location[0])
        self._send(TestMessage(test=nodeid, state="running"))

    def pytest_runtest_logreport(self, report: pytest.TestReport) -> None:
        nodeid = report.nodeid
        pending = self._pending.get(nodeid)

        if report.when == "call":
            state = "passed" if report.passed else "skipped" if report.skipped else "failed"
        elif report.failed:
            # setup or teardown failure
            state = "errored"
        elif report.skipped and report.when == "setup":
            state = "skipped"
        else:
            return
        # a failing teardown overrides a result that looked fine
        if pending is not None and pending.state not in ("passed", "skipped"):
            return

        message: str | None = None
        if state == "skipped" and isinstance(report.longrepr, tuple):
            message = str(report.longrepr[2])
        elif state != "passed":
            message = report.longreprtext or None
        self._pending[nodeid] = TestMessage(
            test=nodeid,
            state=state,  # type: ignore[arg-type]
            message=message,
            description=f"{report.duration * 1000:.0f}ms",
            decorations=self._decorations(report) if state in ("failed", "errored") else (),
        )

    def pytest_runtest_logfinish(self, nodeid: str, location: tuple[str, int | None, str]) -> None:
        result = self._pending.pop(nodeid, None)
        if result is not None:
            self._send(result)

    def pytest_sessionfinish(self) -> None:
        # results of an interrupted item
        for nodeid in list(self._pending):
            self._send(self._pending.pop(nodeid))
        self._complete_suite()

    def _complete_suite(self) -> None:
        if self._current_suite is None:
            return
        elapsed = (time.monotonic() - self._suite_started) * 1000
        self._send(
            SuiteStateMessage(
                suite=self._current_suite,
                state="completed",
                description=f"{elapsed:.0f}ms",
            )
        )
        self._current_suite = None

    def _decorations(self, report: pytest.TestReport) -> tuple[Decoration, ...]:
        crash = getattr(report.longrepr, "reprcrash", None)
        test_file = self._files.get(report.nodeid)
        if crash is None or test_file is None:
            return ()
        if os.path.normpath(os.path.abspath(crash.path)) != test_file:
            return ()
        return (Decoration(line=crash.lineno - 1, message=crash.message),)
