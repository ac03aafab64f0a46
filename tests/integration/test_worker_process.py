"""Integration tests: real worker processes against a temporary project."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import os
import subprocess
import sys

import pytest

from testwire._internal.config import TestwireConfig
from testwire.adapter import AdapterCore
from testwire.engine.events import LoadFinishedEvent, RetireEvent, RunFinishedEvent
from testwire.engine.protocol import FrameworkOpts, TestMessage, WorkItem
from testwire.worker.processor import HMR_NOT_HOOKED

_TIMEOUT = 30.0


class _Collected:
    """Events published by one AdapterCore."""

    def __init__(self, core: AdapterCore) -> None:
        self.loads: list[LoadFinishedEvent] = []
        self.results: dict[str, TestMessage] = {}
        self.run_finished: list[RunFinishedEvent] = []
        core.hub.tests_emitter.subscribe(self._on_load)
        core.hub.test_states_emitter.subscribe(self._on_state)

    def _on_load(self, event: object) -> None:
        if isinstance(event, LoadFinishedEvent):
            self.loads.append(event)

    def _on_state(self, event: object) -> None:
        if isinstance(event, TestMessage) and event.state != "running":
            self.results[event.test] = event
        elif isinstance(event, RunFinishedEvent):
            self.run_finished.append(event)


@pytest.fixture
def output() -> list[str]:
    return []


@pytest.fixture
async def core(project_config, output):
    core = AdapterCore(project_config, output=output.append)
    yield core
    await core.close()


class TestLoad:
    """Loading a project in a real worker."""

    async def test_tree_collected(self, core, sample_project):
        events = _Collected(core)

        await asyncio.wait_for(core.load(), _TIMEOUT)

        (finished,) = events.loads
        assert finished.error_message is None
        assert finished.suite.id == f"{sample_project}: pytest"
        assert [child.id for child in finished.suite.children] == [
            "tests/test_math.py",
            "tests/test_other.py",
        ]
        assert "tests/test_math.py::TestGroup::test_inside" in core.nodes_by_id
        assert core.nodes_by_id["tests/test_math.py::test_later"].skipped

    async def test_collection_error(self, core, sample_project):
        (sample_project / "tests" / "test_bad.py").write_text("def test_(:\n    pass\n")
        events = _Collected(core)

        await asyncio.wait_for(core.load(), _TIMEOUT)

        (finished,) = events.loads
        assert finished.suite is None
        assert "test_bad.py" in finished.error_message

    async def test_empty_project(self, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()
        core = AdapterCore(TestwireConfig(cwd=str(empty), python_path=sys.executable))
        events = _Collected(core)
        try:
            await asyncio.wait_for(core.load(), _TIMEOUT)
        finally:
            await core.close()

        assert events.loads == [LoadFinishedEvent(suite=None)]

    async def test_missing_required_module(self, project_config):
        config = dataclasses.replace(
            project_config,
            framework_opts=FrameworkOpts(requires=("testwire_no_such_module",)),
        )
        core = AdapterCore(config)
        events = _Collected(core)
        try:
            await asyncio.wait_for(core.load(), _TIMEOUT)
        finally:
            await core.close()

        (finished,) = events.loads
        assert "testwire_no_such_module" in finished.error_message


class TestRun:
    """Running tests in a real worker."""

    async def test_run_everything(self, core, sample_project):
        events = _Collected(core)
        await asyncio.wait_for(core.load(), _TIMEOUT)

        await asyncio.wait_for(core.run([f"{sample_project}: pytest"]), _TIMEOUT)

        states = {test: message.state for test, message in events.results.items()}
        assert states == {
            "tests/test_math.py::test_add": "passed",
            "tests/test_math.py::test_broken": "failed",
            "tests/test_math.py::test_later": "skipped",
            "tests/test_math.py::TestGroup::test_inside": "passed",
            "tests/test_other.py::test_other": "passed",
        }
        broken = events.results["tests/test_math.py::test_broken"]
        assert [d.line for d in broken.decorations] == [9]
        assert events.run_finished == [RunFinishedEvent()]

    async def test_output_forwarded(self, core, output):
        await asyncio.wait_for(core.load(), _TIMEOUT)

        await asyncio.wait_for(core.run(["tests/test_math.py::test_add"]), _TIMEOUT)

        assert any("adding" in chunk for chunk in output)

    async def test_run_subset(self, core):
        events = _Collected(core)
        await asyncio.wait_for(core.load(), _TIMEOUT)

        await asyncio.wait_for(core.run(["tests/test_other.py"]), _TIMEOUT)

        assert list(events.results) == ["tests/test_other.py::test_other"]

    async def test_pruned_files(self, project_config, sample_project):
        config = dataclasses.replace(project_config, prune_files=True)
        core = AdapterCore(config)
        events = _Collected(core)
        # a broken sibling file is not collected when only test_other.py is handed over
        try:
            await asyncio.wait_for(core.load(), _TIMEOUT)
            (sample_project / "tests" / "test_math.py").write_text("def test_(:\n")
            await asyncio.wait_for(core.run(["tests/test_other.py::test_other"]), _TIMEOUT)
        finally:
            await core.close()

        assert events.results["tests/test_other.py::test_other"].state == "passed"
        assert events.run_finished == [RunFinishedEvent()]

    async def test_environment_forwarded(self, project_config, sample_project):
        (sample_project / "tests" / "test_env.py").write_text(
            "import os\n\n\ndef test_env():\n    assert os.environ['TESTWIRE_SAMPLE'] == 'yes'\n"
        )
        config = dataclasses.replace(project_config, env={"TESTWIRE_SAMPLE": "yes"})
        core = AdapterCore(config)
        events = _Collected(core)
        try:
            await asyncio.wait_for(core.load(), _TIMEOUT)
            await asyncio.wait_for(core.run(["tests/test_env.py::test_env"]), _TIMEOUT)
        finally:
            await core.close()

        assert events.results["tests/test_env.py::test_env"].state == "passed"


def test_single_shot_worker(sample_project):
    """Without an IPC channel the worker serves one WorkItem from argv."""
    item = WorkItem(action="load", cwd=str(sample_project), log_enabled=False)
    env = {k: v for k, v in os.environ.items() if not k.startswith("TESTWIRE_")}

    completed = subprocess.run(
        [sys.executable, "-m", "testwire.worker", json.dumps(item.to_wire())],
        capture_output=True,
        text=True,
        env=env,
        timeout=_TIMEOUT,
        check=False,
    )

    assert completed.returncode == 0, completed.stderr
    messages = [json.loads(line) for line in completed.stdout.splitlines() if line.strip()]
    suites = [m for m in messages if isinstance(m, dict) and m.get("type") == "suite"]
    assert len(suites) == 1
    assert suites[0]["sessionId"] == 0
    assert [child["id"] for child in suites[0]["children"]] == ["tests/test_math.py", "tests/test_other.py"]


def test_worker_without_channel_or_item_fails():
    env = {k: v for k, v in os.environ.items() if not k.startswith("TESTWIRE_")}
    completed = subprocess.run(
        [sys.executable, "-m", "testwire.worker"],
        capture_output=True,
        text=True,
        env=env,
        timeout=_TIMEOUT,
        check=False,
    )
    assert completed.returncode == 2
    assert "No IPC channel configured" in completed.stderr


# ---------------------------------------------------------------------------
# Hot reload
# ---------------------------------------------------------------------------

_WATCHING_CONFTEST = '''\
import pathlib
import threading
import time

from testwire.hot_reload import signal_reload

_TESTS = pathlib.Path(__file__).parent


def _snapshot():
    return {path.name: path.read_bytes() for path in _TESTS.glob("test_*.py")}


def _watch():
    seen = _snapshot()
    while True:
        time.sleep(0.05)
        current = _snapshot()
        if current != seen:
            seen = current
            signal_reload()


if not any(thread.name == "test-file-watcher" for thread in threading.enumerate()):
    threading.Thread(target=_watch, name="test-file-watcher", daemon=True).start()

signal_reload()
'''


def _replace(path, text: str) -> None:
    """Swap a file's content in one step so the watcher never sees half of it."""
    staging = path.with_name(f".{path.name}.new")
    staging.write_text(text)
    os.replace(staging, path)


def _test_ids(event: LoadFinishedEvent) -> set[str]:
    return {test.id for test in event.suite.iter_tests()} if event.suite is not None else set()


async def _eventually(condition, timeout: float = _TIMEOUT) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


@pytest.fixture
def watching_project(tmp_path):
    """A project whose conftest announces hot reload and watches its test files."""
    project = tmp_path / "watching"
    (project / "tests").mkdir(parents=True)
    (project / "tests" / "conftest.py").write_text(_WATCHING_CONFTEST)
    (project / "tests" / "test_a.py").write_text("def test_one():\n    pass\n")
    (project / "tests" / "test_b.py").write_text("def test_two():\n    pass\n")
    return project


class TestHotReload:
    """A hot-reload worker streaming updated trees."""

    async def test_changed_file_resends_tree(self, watching_project):
        config = TestwireConfig(cwd=str(watching_project), python_path=sys.executable, hmr_entry="tests")
        core = AdapterCore(config)
        events = _Collected(core)
        retired: list[RetireEvent] = []
        core.hub.retire_emitter.subscribe(retired.append)
        try:
            await asyncio.wait_for(core.load(), _TIMEOUT)
            assert core.hmr_worker is not None
            assert _test_ids(events.loads[0]) == {"tests/test_a.py::test_one", "tests/test_b.py::test_two"}

            _replace(
                watching_project / "tests" / "test_a.py",
                "def test_one():\n    pass\n\n\ndef test_three():\n    pass\n",
            )
            await _eventually(lambda: any("tests/test_a.py::test_three" in _test_ids(e) for e in events.loads))
        finally:
            await core.close()

        assert retired[0] == RetireEvent()
        # only tests of the edited file are marked stale
        assert RetireEvent(tests=("tests/test_a.py::test_one", "tests/test_a.py::test_three")) in retired
        assert _test_ids(events.loads[-1]) == {
            "tests/test_a.py::test_one",
            "tests/test_a.py::test_three",
            "tests/test_b.py::test_two",
        }

    async def test_project_without_hook_gets_no_reload_worker(self, sample_project):
        config = TestwireConfig(cwd=str(sample_project), python_path=sys.executable, hmr_entry="tests")
        core = AdapterCore(config)
        events = _Collected(core)
        try:
            await asyncio.wait_for(core.load(), _TIMEOUT)
        finally:
            await core.close()

        (finished,) = events.loads
        assert "tests/test_other.py::test_other" in _test_ids(finished)
        assert core.hmr_worker is None


def test_hot_reload_never_hooked_reports_error(sample_project):
    """A worker asked for hot reload says so when the project never calls the hook."""
    item = WorkItem(action="load", cwd=str(sample_project), enable_hmr=True, log_enabled=False)
    env = {k: v for k, v in os.environ.items() if not k.startswith("TESTWIRE_")}

    completed = subprocess.run(
        [sys.executable, "-m", "testwire.worker", json.dumps(item.to_wire())],
        capture_output=True,
        text=True,
        env=env,
        timeout=_TIMEOUT,
        check=False,
    )

    assert completed.returncode == 0, completed.stderr
    messages = [json.loads(line) for line in completed.stdout.splitlines() if line.strip()]
    objects = [m for m in messages if isinstance(m, dict)]
    assert [m["type"] for m in objects] == ["suite", "error"]
    assert "hotReload" not in objects[0]
    assert objects[1]["errorMessage"] == HMR_NOT_HOOKED
