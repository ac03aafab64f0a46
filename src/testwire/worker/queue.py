"""Worker-side dispatcher of commands received on a pipe."""

from __future__ import annotations

import asyncio
import threading
import traceback
from typing import TYPE_CHECKING, Protocol

from testwire._internal.errors import ProtocolError
from testwire._internal.logging import get_logger
from testwire.engine.protocol import (
    ErrorMessage,
    ExitRequest,
    decode_command,
    encode_event,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from testwire._internal.types import JsonValue
    from testwire.engine.pipe import Pipe
    from testwire.engine.protocol import WorkerEvent, WorkItem

logger = get_logger("worker.queue")

INCOMPATIBLE_OPTIONS = "pytest initialization options have changed. Worker must be reloaded."


def describe_error(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error
    return "".join(traceback.format_exception(type(error), error, error.__traceback__)).rstrip()


class CommandProcessor(Protocol):
    """Binding to the test framework, driven by a :class:`CommandQueue`."""

    async def initialize(self, writer: QueueWriter, item: WorkItem) -> None: ...

    async def load_tests(self, writer: QueueWriter, test_files: tuple[str, ...]) -> None: ...

    async def run_tests(
        self,
        writer: QueueWriter,
        test_files: tuple[str, ...],
        tests: tuple[str, ...] | None,
    ) -> None: ...

    def dispose(self) -> None: ...


class QueueWriter:
    """Session-scoped writer: every message it sends carries its session id.

    All methods may be called from any thread; writes are marshalled onto
    the queue's event loop.
    """

    def __init__(self, queue: CommandQueue, session_id: int) -> None:
        self._queue = queue
        self.session_id = session_id
        self._stopped = False

    def send_info(self, info: str) -> None:
        self._queue.send_info(info)

    def send_error(self, error: BaseException | str) -> None:
        self._queue.send_error(error, session_id=self.session_id)

    def send_message(self, event: WorkerEvent) -> None:
        self._queue.send_message(event, session_id=self.session_id)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._queue.call_soon(self._queue.session_done, self)


class CommandQueue:
    """Receives WorkItems, initialises the processor once, dispatches commands.

    Args:
        pipe: Transport to the host.
        exit_when_idle: Stop as soon as no session is active. Used by
            single-shot carriers that serve one command per process.
    """

    def __init__(self, pipe: Pipe, *, exit_when_idle: bool = False) -> None:
        self._pipe = pipe
        self._exit_when_idle = exit_when_idle
        self._processor: CommandProcessor | None = None
        self._init_args: WorkItem | None = None
        self._initialization: asyncio.Task[None] | None = None
        self._active: set[QueueWriter] = set()
        self._stopped = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def start(self, processor: CommandProcessor) -> None:
        self._processor = processor
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._pipe.subscribe(self._process_message)
        self._pipe.on_close(self.stop)

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        logger.debug("Command queue stopping")
        self._pipe.unsubscribe(self._process_message)
        if self._processor is not None:
            self._processor.dispose()
        self._pipe.dispose()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    # -------------------------------------------------------------------------
    # Outgoing messages
    # -------------------------------------------------------------------------

    def call_soon(self, callback: Callable[..., object], *args: object) -> None:
        """Run ``callback`` on the queue's loop, from whichever thread."""
        if self._loop is None or threading.get_ident() == self._loop_thread:
            callback(*args)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(callback, *args)

    def post(self, message: JsonValue) -> None:
        self.call_soon(self._write, message)

    def _write(self, message: JsonValue) -> None:
        if not self._stopped.is_set():
            self._pipe.write(message)

    def send_info(self, info: str) -> None:
        if self._init_args is None or self._init_args.log_enabled:
            self.post(info)

    def send_error(self, error: BaseException | str, *, session_id: int = 0) -> None:
        self.post(encode_event(ErrorMessage(error_message=describe_error(error)), session_id))

    def send_message(self, event: WorkerEvent, *, session_id: int = 0) -> None:
        self.post(encode_event(event, session_id))

    def session_done(self, writer: QueueWriter) -> None:
        self._active.discard(writer)
        if self._exit_when_idle and not self._active:
            self.stop()

    # -------------------------------------------------------------------------
    # Incoming messages
    # -------------------------------------------------------------------------

    async def _process_message(self, raw: JsonValue) -> None:
        try:
            command = decode_command(raw)
        except ProtocolError as exc:
            logger.warning("Ignoring malformed command: %s", exc)
            self.send_error(exc)
            return
        if command is None:
            return
        if isinstance(command, ExitRequest):
            self.stop()
            return
        if self.stopped:
            return

        item = command
        assert self._processor is not None
        writer = QueueWriter(self, item.session_id)
        self._active.add(writer)
        report_errors = item.action == "load"

        if self._init_args is None:
            self._init_args = item
            self._initialization = asyncio.ensure_future(self._processor.initialize(writer, item))
        elif not self._init_args.is_compatible(item):
            writer.send_error(INCOMPATIBLE_OPTIONS)
            self.stop()
            return

        assert self._initialization is not None
        try:
            await asyncio.shield(self._initialization)
        except Exception as exc:  # noqa: BLE001
            self.send_info(f"Caught error {exc!r}")
            if report_errors:
                writer.send_error(exc)
            self.call_soon(self.stop)
            return

        try:
            if item.action == "load":
                await self._processor.load_tests(writer, item.test_files)
            else:
                await self._processor.run_tests(writer, item.test_files, item.tests)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Command %s failed", item.action)
            writer.send_error(exc)
        finally:
            writer.stop()
