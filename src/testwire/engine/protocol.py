"""Wire types exchanged between a host and its worker process.

Everything crossing a pipe is a JSON value. Plain strings are log lines and
are never decoded; JSON objects are decoded once, at the transport boundary,
into the dataclasses below.
"""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Union

from testwire._internal.errors import ProtocolError

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from testwire._internal.types import Action, HotReload, JsonValue, SuiteState, TestState

DEFAULT_SESSION_ID = 0

_OUTPUT_PREFIX = re.compile(r"^(\d+):(.*)$", re.DOTALL)


# =============================================================================
# Commands (host -> worker)
# =============================================================================


@dataclass(frozen=True)
class FrameworkOpts:
    """pytest options shared by every command a worker process serves.

    Attributes:
        args: Extra command-line arguments passed to every pytest invocation.
        requires: Modules imported once when the worker initialises.
        exit: Hard-exit the worker when done instead of a graceful stop.
        timeout: Per-test timeout in seconds, forwarded to pytest-timeout.
    """

    args: tuple[str, ...] = ()
    requires: tuple[str, ...] = ()
    exit: bool = False
    timeout: float | None = None

    def to_wire(self) -> dict[str, JsonValue]:
        return {
            "args": list(self.args),
            "requires": list(self.requires),
            "exit": self.exit,
            "timeout": self.timeout,
        }

    @classmethod
    def from_wire(cls, raw: Mapping[str, Any] | None) -> FrameworkOpts:
        if not raw:
            return cls()
        return cls(
            args=tuple(raw.get("args") or ()),
            requires=tuple(raw.get("requires") or ()),
            exit=bool(raw.get("exit", False)),
            timeout=raw.get("timeout"),
        )


@dataclass(frozen=True)
class WorkItem:
    """Immutable description of one load or run invocation.

    Attributes:
        action: ``"load"`` collects the test tree, ``"run"`` executes tests.
        test_files: Test files handed to pytest.
        tests: Node ids to run; ``None`` runs everything in ``test_files``.
        framework_opts: pytest options (part of the compatibility key).
        env: Environment overrides; a ``None`` value unsets the variable.
        cwd: Working directory of the worker.
        session_id: Session the worker must tag its replies with.
        monkey_patch: Attach source locations reported by pytest itself.
        enable_hmr: Keep streaming suite updates after the first load.
        debugger_port: Port a debugger was asked to listen on, for diagnostics.
        log_enabled: Whether the worker should send log lines.
    """

    action: Action
    test_files: tuple[str, ...] = ()
    tests: tuple[str, ...] | None = None
    framework_opts: FrameworkOpts = field(default_factory=FrameworkOpts)
    env: Mapping[str, str | None] = field(default_factory=dict)
    cwd: str = "."
    session_id: int = DEFAULT_SESSION_ID
    monkey_patch: bool = False
    enable_hmr: bool = False
    debugger_port: int | None = None
    log_enabled: bool = True

    def init_key(self) -> tuple[object, ...]:
        """Return the fields that require re-initialising pytest when they change.

        Two WorkItems can share a worker process iff their init keys are
        equal. Action, files, test ids, session id, debugger port and the
        log flag are per-invocation and never affect compatibility.
        """
        return (
            self.cwd,
            tuple(sorted(self.env.items())),
            self.framework_opts,
            self.monkey_patch,
            self.enable_hmr,
        )

    def is_compatible(self, other: WorkItem) -> bool:
        return self.init_key() == other.init_key()

    def with_session(self, session_id: int) -> WorkItem:
        return dataclasses.replace(self, session_id=session_id)

    def to_wire(self) -> dict[str, JsonValue]:
        payload: dict[str, JsonValue] = {
            "action": self.action,
            "testFiles": list(self.test_files),
            "frameworkOpts": self.framework_opts.to_wire(),
            "env": dict(self.env),
            "cwd": self.cwd,
            "sessionId": self.session_id,
            "monkeyPatch": self.monkey_patch,
            "enableHmr": self.enable_hmr,
            "logEnabled": self.log_enabled,
        }
        if self.tests is not None:
            payload["tests"] = list(self.tests)
        if self.debugger_port is not None:
            payload["debuggerPort"] = self.debugger_port
        return payload

    @classmethod
    def from_wire(cls, raw: Mapping[str, Any]) -> WorkItem:
        action = raw.get("action")
        if action not in ("load", "run"):
            msg = f"Unknown worker action: {action!r}"
            raise ProtocolError(msg)
        try:
            return cls._from_fields(action, raw)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            msg = f"Malformed WorkItem: {exc}"
            raise ProtocolError(msg) from exc

    @classmethod
    def _from_fields(cls, action: Action, raw: Mapping[str, Any]) -> WorkItem:
        tests = raw.get("tests")
        return cls(
            action=action,
            test_files=tuple(raw.get("testFiles") or ()),
            tests=tuple(tests) if tests is not None else None,
            framework_opts=FrameworkOpts.from_wire(raw.get("frameworkOpts")),
            env=dict(raw.get("env") or {}),
            cwd=raw.get("cwd") or ".",
            session_id=int(raw.get("sessionId") or DEFAULT_SESSION_ID),
            monkey_patch=bool(raw.get("monkeyPatch", False)),
            enable_hmr=bool(raw.get("enableHmr", False)),
            debugger_port=raw.get("debuggerPort"),
            log_enabled=bool(raw.get("logEnabled", True)),
        )


@dataclass(frozen=True)
class ExitRequest:
    """Control message asking the worker to stop; not tied to any session."""

    def to_wire(self) -> dict[str, JsonValue]:
        return {"exit": True}


Command = Union[WorkItem, ExitRequest]


def decode_command(raw: JsonValue) -> Command | None:
    """Decode a message received by a worker.

    Returns:
        The decoded command, or None for values that are not commands
        (log strings and other non-objects are ignored by workers).

    Raises:
        ProtocolError: If an object is neither an exit request nor a WorkItem.
    """
    if not isinstance(raw, dict):
        return None
    if raw.get("exit"):
        return ExitRequest()
    return WorkItem.from_wire(raw)


# =============================================================================
# Test tree
# =============================================================================


@dataclass(frozen=True)
class TestInfo:
    """A single collected test."""

    __test__ = False

    id: str
    label: str
    file: str | None = None
    line: int | None = None
    skipped: bool = False
    hot_reload: bool = False

    def to_wire(self) -> dict[str, JsonValue]:
        payload: dict[str, JsonValue] = {"type": "test", "id": self.id, "label": self.label}
        if self.file is not None:
            payload["file"] = self.file
        if self.line is not None:
            payload["line"] = self.line
        if self.skipped:
            payload["skipped"] = True
        if self.hot_reload:
            payload["hotReload"] = True
        return payload


@dataclass(frozen=True)
class SuiteInfo:
    """A suite node; children are suites or tests."""

    id: str
    label: str
    children: tuple[SuiteInfo | TestInfo, ...] = ()
    file: str | None = None
    line: int | None = None
    hot_reload: bool = False

    def to_wire(self) -> dict[str, JsonValue]:
        payload: dict[str, JsonValue] = {
            "type": "suite",
            "id": self.id,
            "label": self.label,
            "children": [child.to_wire() for child in self.children],
        }
        if self.file is not None:
            payload["file"] = self.file
        if self.line is not None:
            payload["line"] = self.line
        if self.hot_reload:
            payload["hotReload"] = True
        return payload

    def walk(self) -> Iterator[SuiteInfo | TestInfo]:
        """Yield this suite and every descendant, depth first."""
        yield self
        for child in self.children:
            if isinstance(child, SuiteInfo):
                yield from child.walk()
            else:
                yield child

    def iter_tests(self) -> Iterator[TestInfo]:
        for node in self.walk():
            if isinstance(node, TestInfo):
                yield node

    def hot_reloaded_files(self) -> set[str]:
        return {node.file for node in self.walk() if node.hot_reload and node.file is not None}


def _decode_node(raw: Mapping[str, Any]) -> SuiteInfo | TestInfo:
    kind = raw.get("type", "test" if "children" not in raw else "suite")
    if kind == "suite":
        return SuiteInfo(
            id=str(raw.get("id", "")),
            label=str(raw.get("label", "")),
            children=tuple(_decode_node(child) for child in raw.get("children") or ()),
            file=raw.get("file"),
            line=raw.get("line"),
            hot_reload=raw.get("hotReload") is True,
        )
    return TestInfo(
        id=str(raw.get("id", "")),
        label=str(raw.get("label", "")),
        file=raw.get("file"),
        line=raw.get("line"),
        skipped=bool(raw.get("skipped", False)),
        hot_reload=raw.get("hotReload") is True,
    )


# =============================================================================
# Events (worker -> host)
# =============================================================================


@dataclass(frozen=True)
class SuiteMessage:
    """The whole collected test tree."""

    suite: SuiteInfo
    hot_reload: HotReload | None = None
    session_id: int = DEFAULT_SESSION_ID
    type: Literal["suite"] = "suite"

    def to_wire(self) -> dict[str, JsonValue]:
        payload = self.suite.to_wire()
        if self.hot_reload is not None:
            payload["hotReload"] = self.hot_reload
        payload["sessionId"] = self.session_id
        return payload


@dataclass(frozen=True)
class Decoration:
    """A message attached to a line of a test file (0-based)."""

    line: int
    message: str

    def to_wire(self) -> dict[str, JsonValue]:
        return {"line": self.line, "message": self.message}


@dataclass(frozen=True)
class TestMessage:
    """State change of one test during a run."""

    __test__ = False

    test: str
    state: TestState
    message: str | None = None
    description: str | None = None
    decorations: tuple[Decoration, ...] = ()
    session_id: int = DEFAULT_SESSION_ID
    type: Literal["test"] = "test"

    def to_wire(self) -> dict[str, JsonValue]:
        payload: dict[str, JsonValue] = {
            "type": "test",
            "test": self.test,
            "state": self.state,
            "sessionId": self.session_id,
        }
        if self.message is not None:
            payload["message"] = self.message
        if self.description is not None:
            payload["description"] = self.description
        if self.decorations:
            payload["decorations"] = [d.to_wire() for d in self.decorations]
        return payload


@dataclass(frozen=True)
class SuiteStateMessage:
    """State change of one suite during a run."""

    suite: str
    state: SuiteState
    description: str | None = None
    session_id: int = DEFAULT_SESSION_ID
    type: Literal["suite"] = "suite"

    def to_wire(self) -> dict[str, JsonValue]:
        payload: dict[str, JsonValue] = {
            "type": "suite",
            "suite": self.suite,
            "state": self.state,
            "sessionId": self.session_id,
        }
        if self.description is not None:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True)
class ErrorMessage:
    """Free-text failure reported by the worker."""

    error_message: str
    session_id: int = DEFAULT_SESSION_ID
    type: Literal["error"] = "error"

    def to_wire(self) -> dict[str, JsonValue]:
        return {"type": "error", "errorMessage": self.error_message, "sessionId": self.session_id}


@dataclass(frozen=True)
class NoTestMessage:
    """Collection succeeded but found nothing."""

    session_id: int = DEFAULT_SESSION_ID
    type: Literal["noTest"] = "noTest"

    def to_wire(self) -> dict[str, JsonValue]:
        return {"type": "noTest", "sessionId": self.session_id}


@dataclass(frozen=True)
class FinishedMessage:
    """A run is complete."""

    session_id: int = DEFAULT_SESSION_ID
    type: Literal["finished"] = "finished"

    def to_wire(self) -> dict[str, JsonValue]:
        return {"type": "finished", "sessionId": self.session_id}


WorkerEvent = Union[
    SuiteMessage,
    TestMessage,
    SuiteStateMessage,
    ErrorMessage,
    NoTestMessage,
    FinishedMessage,
]


def encode_event(event: WorkerEvent | str, session_id: int | None = None) -> JsonValue:
    """Convert an event to its JSON form, optionally re-stamping its session id."""
    if isinstance(event, str):
        return event
    if session_id is not None and event.session_id != session_id:
        event = dataclasses.replace(event, session_id=session_id)
    return event.to_wire()


def decode_event(raw: JsonValue) -> WorkerEvent | str:
    """Decode a message received by the host.

    Strings are returned as-is (log lines). A bare ``null`` is the legacy
    "no test found" reply of single-session workers.

    Raises:
        ProtocolError: If the object does not match any event kind or one of
            its fields has the wrong shape.
    """
    if isinstance(raw, str):
        return raw
    if raw is None:
        return NoTestMessage()
    if not isinstance(raw, dict):
        msg = f"Unexpected message from worker: {raw!r}"
        raise ProtocolError(msg)
    try:
        return _decode_object(raw)
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        msg = f"Malformed {raw.get('type')!r} message from worker: {exc!r}"
        raise ProtocolError(msg) from exc


def _decode_object(raw: dict[str, Any]) -> WorkerEvent:
    session_id = int(raw.get("sessionId") or DEFAULT_SESSION_ID)
    kind = raw.get("type")

    if kind == "suite":
        if "state" in raw:
            return SuiteStateMessage(
                suite=str(raw.get("suite", "")),
                state=raw["state"],
                description=raw.get("description"),
                session_id=session_id,
            )
        hot_reload = raw.get("hotReload")
        node = _decode_node(raw)
        assert isinstance(node, SuiteInfo)
        return SuiteMessage(
            suite=dataclasses.replace(node, hot_reload=False),
            hot_reload=hot_reload if hot_reload in ("initial", "update") else None,
            session_id=session_id,
        )
    if kind == "test":
        if raw.get("state") not in ("running", "passed", "failed", "skipped", "errored"):
            msg = f"Unknown test state: {raw.get('state')!r}"
            raise ProtocolError(msg)
        test = raw.get("test")
        if isinstance(test, dict):
            test = test.get("id")
        return TestMessage(
            test=str(test),
            state=raw["state"],
            message=raw.get("message"),
            description=raw.get("description"),
            decorations=tuple(
                Decoration(line=int(d["line"]), message=str(d.get("message", "")))
                for d in raw.get("decorations") or ()
            ),
            session_id=session_id,
        )
    if kind == "error":
        return ErrorMessage(error_message=str(raw.get("errorMessage", "")), session_id=session_id)
    if kind == "noTest":
        return NoTestMessage(session_id=session_id)
    if kind == "finished":
        return FinishedMessage(session_id=session_id)

    msg = f"Unknown message type from worker: {kind!r}"
    raise ProtocolError(msg)


# =============================================================================
# Output framing
# =============================================================================


def parse_output_line(line: str) -> tuple[int, str]:
    """Split a captured stdout/stderr line into (session id, text).

    A line without a ``"<sessionId>:"`` prefix belongs to the default session.
    """
    match = _OUTPUT_PREFIX.match(line)
    if match is None:
        return DEFAULT_SESSION_ID, line
    return int(match.group(1)), match.group(2)


def format_output_line(session_id: int, text: str) -> str:
    return f"{session_id}:{text}"
