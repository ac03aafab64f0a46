"""Shared test fixtures for the testwire test suite."""

from __future__ import annotations

import asyncio
import logging
import sys
import textwrap
from typing import TYPE_CHECKING

import pytest

from testwire._internal.config import TestwireConfig
from testwire.engine.events import EventHub
from testwire.engine.pipe import InProcessPipe

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterator
    from pathlib import Path

    from testwire._internal.types import JsonValue
    from testwire.engine.launcher import WorkerConfig


# =============================================================================
# Pytest configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-apply markers based on test directory structure."""
    for item in items:
        test_path = str(item.fspath)
        if "/unit/" in test_path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in test_path:
            item.add_marker(pytest.mark.integration)
        elif "/e2e/" in test_path:
            item.add_marker(pytest.mark.e2e)


# =============================================================================
# Fake worker processes
# =============================================================================


class FakeWorkerProcess:
    """A worker process driven by the test instead of a child interpreter.

    The host side sees an ordinary :class:`WorkerProcess`; the test plays
    the worker through :meth:`send`, :meth:`print` and :meth:`exit`.
    """

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.pipe, self.peer = InProcessPipe.pair()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.killed = False
        self.commands: asyncio.Queue[JsonValue] = asyncio.Queue()
        self._exit: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        self.peer.subscribe(self.commands.put_nowait)

    def send(self, message: JsonValue) -> None:
        """Send a message from the worker to the host."""
        self.peer.write(message)

    def print(self, session_id: int, text: str, *, stderr: bool = False) -> None:
        stream = self.stderr if stderr else self.stdout
        stream.feed_data(f"{session_id}:{text}\n".encode())

    def exit(self, code: int = 0) -> None:
        """End the process after everything sent so far was delivered."""
        asyncio.get_running_loop().call_soon(self._finish, code)

    def _finish(self, code: int) -> None:
        if self._exit.done():
            return
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self.peer.dispose()
        self._exit.set_result(code)

    def kill(self) -> None:
        self.killed = True
        self._finish(-9)

    async def wait(self) -> int:
        return await self._exit

    async def next_command(self, timeout: float = 1.0) -> JsonValue:
        return await asyncio.wait_for(self.commands.get(), timeout)

    def pending_commands(self) -> list[JsonValue]:
        drained = []
        while not self.commands.empty():
            drained.append(self.commands.get_nowait())
        return drained


class FakeLauncher:
    """Launcher handing out :class:`FakeWorkerProcess` instances."""

    def __init__(self) -> None:
        self.processes: list[FakeWorkerProcess] = []
        self.debug_flags: list[bool] = []
        self.configs: list[WorkerConfig] = []
        self.error: Exception | None = None

    async def __call__(self, config: WorkerConfig, debug: bool = False) -> FakeWorkerProcess:
        if self.error is not None:
            raise self.error
        process = FakeWorkerProcess(pid=1000 + len(self.processes))
        self.processes.append(process)
        self.debug_flags.append(debug)
        self.configs.append(config)
        return process

    @property
    def last(self) -> FakeWorkerProcess:
        return self.processes[-1]


class EventRecorder:
    """Collects everything published on an :class:`EventHub`."""

    def __init__(self, hub: EventHub) -> None:
        self.tests: list[object] = []
        self.states: list[object] = []
        self.retired: list[object] = []
        self.output: list[str] = []
        hub.tests_emitter.subscribe(self.tests.append)
        hub.test_states_emitter.subscribe(self.states.append)
        hub.retire_emitter.subscribe(self.retired.append)
        hub.output = self.output.append


async def _settle(rounds: int = 10) -> None:
    """Let callbacks scheduled with ``call_soon`` run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def _reset_testwire_logger() -> Iterator[None]:
    """Undo logging configuration done by CLI runs and workers under test."""
    yield
    logger = logging.getLogger("testwire")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def settle() -> Callable[..., Awaitable[None]]:
    """Coroutine function draining pending ``call_soon`` callbacks."""
    return _settle


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def hub() -> EventHub:
    return EventHub(workspace_path="/ws")


@pytest.fixture
def recorder(hub: EventHub) -> EventRecorder:
    return EventRecorder(hub)


# =============================================================================
# Temporary pytest projects
# =============================================================================


@pytest.fixture
def sample_project(tmp_path: Path) -> Path:
    """A small pytest project: one passing, one failing and one skipped test."""
    project = tmp_path / "project"
    (project / "tests").mkdir(parents=True)
    (project / "tests" / "test_math.py").write_text(
        textwrap.dedent(
            """\
            import pytest


            def test_add():
                print("adding")
                assert 1 + 1 == 2


            def test_broken():
                assert 1 + 1 == 3


            @pytest.mark.skip(reason="not ready")
            def test_later():
                pass


            class TestGroup:
                def test_inside(self):
                    assert True
            """
        )
    )
    (project / "tests" / "test_other.py").write_text(
        textwrap.dedent(
            """\
            def test_other():
                assert "a" in "abc"
            """
        )
    )
    return project


@pytest.fixture
def project_config(sample_project: Path) -> TestwireConfig:
    return TestwireConfig(cwd=str(sample_project), python_path=sys.executable)
