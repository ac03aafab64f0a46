"""Per-invocation session state machines.

A session turns the raw events of one worker invocation into consumer
events. Whatever ends it (a terminal protocol message, an explicit kill, or
the worker dying), a session publishes exactly one terminal notification.
"""

from __future__ import annotations

import abc
import asyncio
import dataclasses
from enum import Enum, auto
from typing import TYPE_CHECKING, Protocol

from testwire._internal.errors import WorkerError
from testwire._internal.logging import get_logger
from testwire.engine.events import LoadFinishedEvent, RetireEvent, RunFinishedEvent
from testwire.engine.protocol import (
    ErrorMessage,
    FinishedMessage,
    NoTestMessage,
    SuiteInfo,
    SuiteMessage,
    SuiteStateMessage,
    TestMessage,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from testwire._internal.types import Disposition
    from testwire.engine.events import EventHub
    from testwire.engine.protocol import TestInfo, WorkerEvent

logger = get_logger("engine.session")


class SessionOwner(Protocol):
    """The part of a worker instance a session is allowed to call back into."""

    def detected_hmr(self) -> None: ...


class SessionState(Enum):
    """State machine shared by both session kinds.

    Load: PENDING -> FINISHED, or PENDING -> STREAMING -> FINISHED with HMR.
    Run:  PENDING -> RUNNING -> FINISHED.
    """

    PENDING = auto()
    RUNNING = auto()
    STREAMING = auto()
    FINISHED = auto()


def worker_failure_message(error: BaseException | None, debugger_port: int | None = None) -> str:
    """Describe why a worker ended, for display to the user."""
    if isinstance(error, WorkerError) and (error.code is not None or error.signal is not None):
        text = f"Worker process exited with code {error.code}"
        if error.signal:
            text += f" and signal {error.signal}"
    elif error is not None:
        text = f"Worker process failed: {error}"
    else:
        text = "Worker process finished without a result"
    if debugger_port is not None:
        text += (
            f"\n\nThe worker was started with a debugger on port {debugger_port}; "
            "check that the port is free and that the debugger could attach."
        )
    return text


class WorkerSession(abc.ABC):
    """Common completion bookkeeping for load and run sessions.

    Two completion signals are exposed: :meth:`wait_initial_run` resolves
    on the first result, :meth:`wait_end` when no further message will be
    handled. Both are idempotent events, so releasing them twice is harmless.
    """

    def __init__(self, hub: EventHub, owner: SessionOwner, session_id: int) -> None:
        self._hub = hub
        self._owner = owner
        self.session_id = session_id
        self._state = SessionState.PENDING
        self._initial_run = asyncio.Event()
        self._end = asyncio.Event()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_finished(self) -> bool:
        return self._state is SessionState.FINISHED

    async def wait_initial_run(self) -> None:
        await self._initial_run.wait()

    async def wait_end(self) -> None:
        await self._end.wait()

    def _release(self) -> None:
        self._state = SessionState.FINISHED
        self._initial_run.set()
        self._end.set()

    @abc.abstractmethod
    def process_message(self, event: WorkerEvent) -> Disposition:
        """Handle one structured message; return "stop" when the session is done."""

    @abc.abstractmethod
    def finished(self, error: BaseException | None = None) -> None:
        """Force the terminal state; a no-op when already finished."""

    @abc.abstractmethod
    def on_stdout(self, text: str) -> None: ...

    @abc.abstractmethod
    def on_stderr(self, text: str) -> None: ...


class LoadSession(WorkerSession):
    """Collects the test tree, and keeps streaming it when hot reload is on."""

    def __init__(
        self,
        hub: EventHub,
        owner: SessionOwner,
        session_id: int,
        *,
        debugger_port: int | None = None,
        changed_files: Iterable[str] | None = None,
    ) -> None:
        super().__init__(hub, owner, session_id)
        self._debugger_port = debugger_port
        self._changed_files = set(changed_files) if changed_files is not None else None
        # True once a suite, error or noTest reached the consumer
        self._delivered = False

    def on_stdout(self, text: str) -> None:
        logger.info("Worker stdout: %s", text.rstrip("\n"), extra={"session_id": self.session_id})

    def on_stderr(self, text: str) -> None:
        logger.error("Worker stderr: %s", text.rstrip("\n"), extra={"session_id": self.session_id})

    def finished(self, error: BaseException | None = None) -> None:
        if self.is_finished:
            return
        if not self._delivered:
            if error is not None:
                self._hub.tests_emitter.fire(
                    LoadFinishedEvent(error_message=worker_failure_message(error, self._debugger_port))
                )
            else:
                self._hub.tests_emitter.fire(LoadFinishedEvent(suite=None))
            self._delivered = True
        self._release()

    def process_message(self, event: WorkerEvent) -> Disposition:
        if self.is_finished:
            logger.debug("Load session %d ignores %s after finishing", self.session_id, event.type)
            return "stop"

        if isinstance(event, ErrorMessage):
            logger.info("Received error from worker")
            self._hub.tests_emitter.fire(LoadFinishedEvent(error_message=event.error_message))
            self._delivered = True
            self._release()
            return "stop"

        if isinstance(event, NoTestMessage):
            logger.info("Worker found no tests")
            self._hub.tests_emitter.fire(LoadFinishedEvent(suite=None))
            self._delivered = True
            self._release()
            return "stop"

        if not isinstance(event, SuiteMessage):
            return "continue"

        logger.info("Received tests from worker")
        root = dataclasses.replace(event.suite, id=self._hub.root_id, label="pytest")
        self._index(root)
        self._hub.tests_emitter.fire(LoadFinishedEvent(suite=root))
        self._delivered = True

        if event.hot_reload is not None:
            self._owner.detected_hmr()
            flagged = root.hot_reloaded_files()
            if flagged or event.hot_reload == "update":
                self._changed_files = flagged
        self._retire(root)

        if event.hot_reload is not None:
            self._state = SessionState.STREAMING
            self._initial_run.set()
            return "continue"

        self._release()
        return "stop"

    def _index(self, root: SuiteInfo) -> None:
        for node in root.walk():
            self._hub.nodes_by_id[node.id] = node

    def _retire(self, root: SuiteInfo) -> None:
        if self._changed_files is None:
            self._hub.retire_emitter.fire(RetireEvent())
            return
        stale = tuple(
            test.id
            for test in root.iter_tests()
            if test.file is not None and test.file in self._changed_files
        )
        self._hub.retire_emitter.fire(RetireEvent(tests=stale))


class RunSession(WorkerSession):
    """Forwards test states and attributes captured output to the running test."""

    def __init__(self, hub: EventHub, owner: SessionOwner, session_id: int) -> None:
        super().__init__(hub, owner, session_id)
        self._running_test: str | None = None

    @property
    def running_test(self) -> str | None:
        return self._running_test

    def on_stdout(self, text: str) -> None:
        self._hub.append_output(text)
        if self._running_test is not None:
            self._hub.test_states_emitter.fire(
                TestMessage(
                    test=self._running_test,
                    state="running",
                    message=text,
                    session_id=self.session_id,
                )
            )

    def on_stderr(self, text: str) -> None:
        self.on_stdout(text)

    def finished(self, error: BaseException | None = None) -> None:
        if self.is_finished:
            return
        self._running_test = None
        error_message = worker_failure_message(error) if error is not None else None
        self._hub.test_states_emitter.fire(RunFinishedEvent(error_message=error_message))
        self._release()

    def process_message(self, event: WorkerEvent) -> Disposition:
        if self.is_finished:
            return "stop"

        if isinstance(event, ErrorMessage):
            logger.info("Received error from worker")
            self._hub.tests_emitter.fire(LoadFinishedEvent(error_message=event.error_message))
            return "stop"

        if isinstance(event, FinishedMessage):
            self.finished()
            return "stop"

        if isinstance(event, (TestMessage, SuiteStateMessage)):
            self._state = SessionState.RUNNING
            self._hub.test_states_emitter.fire(event)
            if isinstance(event, TestMessage):
                self._running_test = event.test if event.state == "running" else None
        else:
            logger.debug("Run session %d ignores %s message", self.session_id, event.type)
        return "continue"


def collect_tests(node: SuiteInfo | TestInfo) -> list[TestInfo]:
    """Expand a node into its leaf tests."""
    if isinstance(node, SuiteInfo):
        return list(node.iter_tests())
    return [node]
