"""Consumer-facing events and the hub sessions publish them on."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, Literal, TypeVar, Union

from testwire._internal.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from testwire.engine.protocol import SuiteInfo, SuiteStateMessage, TestInfo, TestMessage

logger = get_logger("engine.events")

T = TypeVar("T")


@dataclass(frozen=True)
class LoadStartedEvent:
    type: Literal["started"] = "started"


@dataclass(frozen=True)
class LoadFinishedEvent:
    """End of a load; ``suite`` and ``error_message`` are both None for an empty result."""

    suite: SuiteInfo | None = None
    error_message: str | None = None
    type: Literal["finished"] = "finished"


@dataclass(frozen=True)
class RunStartedEvent:
    tests: tuple[str, ...] = ()
    type: Literal["started"] = "started"


@dataclass(frozen=True)
class RunFinishedEvent:
    """End of a run; ``error_message`` is set when the worker died or was killed."""

    error_message: str | None = None
    type: Literal["finished"] = "finished"


@dataclass(frozen=True)
class RetireEvent:
    """Marks results as stale; ``tests`` of None retires the whole tree."""

    tests: tuple[str, ...] | None = None


LoadEvent = Union[LoadStartedEvent, LoadFinishedEvent]
RunEvent = Union[RunStartedEvent, RunFinishedEvent, "TestMessage", "SuiteStateMessage"]


class EventEmitter(Generic[T]):
    """Synchronous fan-out of events to listeners.

    A listener raising an exception is logged and does not prevent the
    remaining listeners from being called.
    """

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._listeners: list[Callable[[T], object]] = []

    def subscribe(self, listener: Callable[[T], object]) -> Callable[[], None]:
        """Register a listener and return a callable that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def fire(self, event: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener of %s failed", self._name or "emitter")


@dataclass
class EventHub:
    """Everything a session publishes to the editor side.

    Attributes:
        workspace_path: Folder the tests belong to; used for the root suite id.
        tests_emitter: Load started/finished events.
        test_states_emitter: Run started/finished and per-test/suite states.
        retire_emitter: Stale-result notifications.
        nodes_by_id: Index of every node of the last loaded tree.
        output: Sink for raw worker output during runs.
    """

    workspace_path: str
    tests_emitter: EventEmitter[LoadEvent] = field(default_factory=lambda: EventEmitter("tests"))
    test_states_emitter: EventEmitter[RunEvent] = field(
        default_factory=lambda: EventEmitter("test states")
    )
    retire_emitter: EventEmitter[RetireEvent] = field(default_factory=lambda: EventEmitter("retire"))
    nodes_by_id: dict[str, SuiteInfo | TestInfo] = field(default_factory=dict)
    output: Callable[[str], object] | None = None

    @property
    def root_id(self) -> str:
        return f"{self.workspace_path}: pytest"

    def append_output(self, text: str) -> None:
        if self.output is not None:
            self.output(text)
