"""Transports carrying JSON messages between a host and a worker.

Three carriers implement the same small contract:

* :class:`InProcessPipe` delivers messages through callbacks in the current
  event loop (single-shot invocation and tests);
* :class:`StreamPipe` frames one JSON document per line over an asyncio
  stream, either the socket inherited from the host (``pass_fds``) or a TCP
  connection opened with :func:`connect_pipe` / :func:`accept_pipe`.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
from typing import TYPE_CHECKING, Protocol

from testwire._internal.logging import get_logger

if TYPE_CHECKING:
    import socket
    from collections.abc import Awaitable, Callable

    from testwire._internal.types import JsonValue

    MessageHandler = Callable[[JsonValue], "Awaitable[None] | None"]

logger = get_logger("engine.pipe")

# asyncio's default 64 KiB line limit is too small for large test trees
_STREAM_LIMIT = 16 * 1024 * 1024


class Pipe(Protocol):
    """Message transport shared by hosts and workers.

    Only one handler is active at a time. Handlers may be coroutine
    functions; their coroutines are scheduled, not awaited, so a slow
    handler never stops the pipe from reading the next message.
    """

    @property
    def connected(self) -> bool: ...

    def write(self, message: JsonValue) -> None: ...

    def subscribe(self, handler: MessageHandler) -> None: ...

    def unsubscribe(self, handler: MessageHandler) -> None: ...

    def on_close(self, callback: Callable[[], None]) -> None: ...

    async def wait_closed(self) -> None: ...

    def dispose(self) -> None: ...


class _HandlerSlot:
    """Holds the single active handler and runs it for each message."""

    def __init__(self) -> None:
        self.handler: MessageHandler | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._close_callbacks: list[Callable[[], None]] = []

    def dispatch(self, message: JsonValue) -> None:
        handler = self.handler
        if handler is None:
            logger.debug("Dropping message, no subscriber: %r", message)
            return
        # a failing handler loses its message, never the pipe
        try:
            result = handler(message)
        except Exception:
            logger.exception("Message handler failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future[None]) -> None:
        self._tasks.discard(task)  # type: ignore[arg-type]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Message handler failed", exc_info=task.exception())

    def add_close_callback(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    def closed(self) -> None:
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback()


# =============================================================================
# In-process carrier
# =============================================================================


class InProcessPipe:
    """Callback-based pipe living in the current process.

    Outgoing messages are passed to ``send`` after a JSON round-trip, so
    anything that would not survive a real transport fails here too.
    Incoming messages are pushed with :meth:`feed`.
    """

    def __init__(self, send: Callable[[JsonValue], None]) -> None:
        self._send = send
        self._slot = _HandlerSlot()
        self._disposed = False
        self._closed = asyncio.Event()

    @classmethod
    def pair(cls) -> tuple[InProcessPipe, InProcessPipe]:
        """Create two endpoints wired to each other.

        Delivery and closing are deferred with ``loop.call_soon`` so that
        writing never re-enters the peer's handler synchronously, and order
        is preserved.
        """
        loop = asyncio.get_running_loop()
        left: InProcessPipe
        right: InProcessPipe
        left = cls(lambda message: loop.call_soon(right.feed, message))
        right = cls(lambda message: loop.call_soon(left.feed, message))
        # closing is deferred like delivery, so messages written first still arrive
        left.on_close(lambda: loop.call_soon(right.dispose))
        right.on_close(lambda: loop.call_soon(left.dispose))
        return left, right

    @property
    def connected(self) -> bool:
        return not self._disposed

    def write(self, message: JsonValue) -> None:
        if self._disposed:
            logger.debug("Write on disposed in-process pipe ignored")
            return
        self._send(json.loads(json.dumps(message)))

    def feed(self, message: JsonValue) -> None:
        if self._disposed:
            return
        self._slot.dispatch(message)

    def subscribe(self, handler: MessageHandler) -> None:
        self._slot.handler = handler

    def unsubscribe(self, handler: MessageHandler) -> None:
        if self._slot.handler == handler:
            self._slot.handler = None

    def on_close(self, callback: Callable[[], None]) -> None:
        self._slot.add_close_callback(callback)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._slot.handler = None
        self._closed.set()
        self._slot.closed()


# =============================================================================
# Line-framed stream carrier
# =============================================================================


class StreamPipe:
    """One JSON document per line over an asyncio stream pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._slot = _HandlerSlot()
        self._read_task: asyncio.Task[None] | None = None
        self._disposed = False
        self._eof = False

    @property
    def connected(self) -> bool:
        return not (self._disposed or self._eof or self._writer.is_closing())

    def write(self, message: JsonValue) -> None:
        if not self.connected:
            logger.debug("Write on closed stream pipe ignored: %r", message)
            return
        data = json.dumps(message, separators=(",", ":")) + "\n"
        self._writer.write(data.encode("utf-8"))

    async def wait_flushed(self) -> None:
        """After :meth:`dispose`, wait until buffered writes reached the peer."""
        with contextlib.suppress(ConnectionError):
            await self._writer.wait_closed()

    def subscribe(self, handler: MessageHandler) -> None:
        self._slot.handler = handler
        if self._read_task is None:
            self._read_task = asyncio.get_running_loop().create_task(
                self._read_loop(), name="testwire-pipe-reader"
            )

    def unsubscribe(self, handler: MessageHandler) -> None:
        if self._slot.handler == handler:
            self._slot.handler = None

    def on_close(self, callback: Callable[[], None]) -> None:
        self._slot.add_close_callback(callback)

    async def wait_closed(self) -> None:
        """Return once the peer closed its end and every line was dispatched."""
        if self._read_task is None:
            return
        await asyncio.wait({self._read_task})

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._slot.handler = None
        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
        self._writer.close()
        self._slot.closed()

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    line = await self._reader.readline()
                except (ConnectionError, asyncio.IncompleteReadError, ValueError) as exc:
                    logger.warning("Pipe read failed: %s", exc)
                    break
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    message = json.loads(text)
                except json.JSONDecodeError:
                    logger.warning("Dropping malformed line on pipe: %r", text[:200])
                    continue
                self._slot.dispatch(message)
        finally:
            self._eof = True
            if not self._disposed:
                self._slot.closed()


async def open_socket_pipe(sock: socket.socket) -> StreamPipe:
    """Wrap an already-connected socket (e.g. one end of a socketpair)."""
    reader, writer = await asyncio.open_connection(sock=sock, limit=_STREAM_LIMIT)
    return StreamPipe(reader, writer)


async def connect_pipe(port: int, host: str = "127.0.0.1") -> StreamPipe:
    """Connect to a listening peer.

    Raises:
        OSError: If the connection is refused.
    """
    reader, writer = await asyncio.open_connection(host, port, limit=_STREAM_LIMIT)
    logger.debug("Connected pipe to %s:%d", host, port)
    return StreamPipe(reader, writer)


async def accept_pipe(port: int, host: str = "127.0.0.1") -> StreamPipe:
    """Listen on ``host:port`` and accept exactly one connection.

    The listener is closed as soon as the first peer connects; later
    connection attempts are refused.
    """
    loop = asyncio.get_running_loop()
    accepted: asyncio.Future[tuple[asyncio.StreamReader, asyncio.StreamWriter]] = loop.create_future()

    def _on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if accepted.done():
            writer.close()
            return
        accepted.set_result((reader, writer))

    server = await asyncio.start_server(_on_connect, host, port, limit=_STREAM_LIMIT)
    logger.debug("Pipe server listening on %s:%d", host, port)
    try:
        reader, writer = await accepted
    finally:
        server.close()
    logger.debug("Pipe client connected")
    return StreamPipe(reader, writer)
