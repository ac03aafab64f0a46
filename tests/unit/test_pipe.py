"""Tests for the pipe carriers."""

from __future__ import annotations

import asyncio
import socket

import pytest

from testwire.engine.pipe import InProcessPipe, accept_pipe, connect_pipe, open_socket_pipe


def _get_free_port() -> int:
    """Find an available port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestInProcessPipe:
    """Tests for the in-process carrier."""

    async def test_messages_delivered_in_order(self, settle):
        """Messages written on one end arrive on the other, in order."""
        left, right = InProcessPipe.pair()
        received = []
        right.subscribe(received.append)

        for index in range(5):
            left.write({"n": index})
        assert received == []  # delivery is deferred

        await settle()
        assert received == [{"n": i} for i in range(5)]

    async def test_json_round_trip(self, settle):
        """Values are copied through JSON, tuples become lists."""
        left, right = InProcessPipe.pair()
        received = []
        right.subscribe(received.append)
        left.write({"files": ("a", "b")})
        await settle()
        assert received == [{"files": ["a", "b"]}]

    async def test_unserialisable_message_rejected(self):
        left, _right = InProcessPipe.pair()
        with pytest.raises(TypeError):
            left.write({"bad": object()})

    async def test_unsubscribe_stops_delivery(self, settle):
        left, right = InProcessPipe.pair()
        received = []
        right.subscribe(received.append)
        right.unsubscribe(received.append)
        left.write("hello")
        await settle()
        assert received == []

    async def test_dispose_closes_peer(self, settle):
        """Disposing one end disposes the other and runs close callbacks."""
        left, right = InProcessPipe.pair()
        closed = []
        right.on_close(lambda: closed.append("right"))

        left.dispose()
        assert not left.connected
        await settle()

        assert not right.connected
        assert closed == ["right"]
        await asyncio.wait_for(right.wait_closed(), 1)

    async def test_async_handler_scheduled(self, settle):
        """Coroutine handlers run as tasks and do not block delivery."""
        left, right = InProcessPipe.pair()
        started = []
        gate = asyncio.Event()

        async def _handler(message):
            started.append(message)
            await gate.wait()

        right.subscribe(_handler)
        left.write(1)
        left.write(2)
        await settle()
        assert started == [1, 2]
        gate.set()
        await settle()

    async def test_messages_written_before_dispose_arrive(self, settle):
        left, right = InProcessPipe.pair()
        received = []
        right.subscribe(received.append)
        left.write("last words")
        left.dispose()
        await settle()
        assert received == ["last words"]
        assert not right.connected

    async def test_write_after_dispose_ignored(self, settle):
        left, right = InProcessPipe.pair()
        received = []
        right.subscribe(received.append)
        left.dispose()
        left.write("late")
        await settle()
        assert received == []


class TestStreamPipe:
    """Tests for the line-framed stream carrier."""

    async def test_socketpair_exchange(self):
        """Messages cross a socket pair in both directions."""
        a, b = socket.socketpair()
        host = await open_socket_pipe(a)
        worker = await open_socket_pipe(b)
        host_inbox: asyncio.Queue = asyncio.Queue()
        worker_inbox: asyncio.Queue = asyncio.Queue()
        host.subscribe(host_inbox.put_nowait)
        worker.subscribe(worker_inbox.put_nowait)

        host.write({"action": "load"})
        worker.write("a log line")
        worker.write({"type": "finished", "sessionId": 0})

        assert await asyncio.wait_for(worker_inbox.get(), 1) == {"action": "load"}
        assert await asyncio.wait_for(host_inbox.get(), 1) == "a log line"
        assert await asyncio.wait_for(host_inbox.get(), 1) == {"type": "finished", "sessionId": 0}

        worker.dispose()
        await worker.wait_flushed()
        await asyncio.wait_for(host.wait_closed(), 1)
        assert not host.connected
        host.dispose()

    async def test_malformed_line_dropped(self):
        """A line that is not JSON is skipped and reading continues."""
        a, b = socket.socketpair()
        host = await open_socket_pipe(a)
        inbox: asyncio.Queue = asyncio.Queue()
        host.subscribe(inbox.put_nowait)

        b.sendall(b"not json\n\n{\"ok\": true}\n")

        assert await asyncio.wait_for(inbox.get(), 1) == {"ok": True}
        b.close()
        await asyncio.wait_for(host.wait_closed(), 1)
        host.dispose()

    async def test_failing_handler_keeps_reading(self):
        """A handler raising on one message does not end the read loop."""
        a, b = socket.socketpair()
        host = await open_socket_pipe(a)
        inbox: asyncio.Queue = asyncio.Queue()

        def _handler(message):
            if message == "boom":
                raise ValueError(message)
            inbox.put_nowait(message)

        host.subscribe(_handler)
        b.sendall(b'"boom"\n{"ok": true}\n')

        assert await asyncio.wait_for(inbox.get(), 1) == {"ok": True}
        assert host.connected
        b.close()
        await asyncio.wait_for(host.wait_closed(), 1)
        host.dispose()

    async def test_peer_close_runs_callbacks(self):
        a, b = socket.socketpair()
        host = await open_socket_pipe(a)
        closed = asyncio.Event()
        host.on_close(closed.set)
        host.subscribe(lambda message: None)

        b.close()

        await asyncio.wait_for(closed.wait(), 1)
        host.dispose()

    async def test_tcp_server_accepts_one_client(self):
        """accept_pipe serves exactly one connection over TCP."""
        port = _get_free_port()
        server_task = asyncio.ensure_future(accept_pipe(port))
        client = None
        for _ in range(50):
            try:
                client = await connect_pipe(port)
                break
            except OSError:
                await asyncio.sleep(0.02)
        assert client is not None
        server = await asyncio.wait_for(server_task, 1)

        inbox: asyncio.Queue = asyncio.Queue()
        server.subscribe(inbox.put_nowait)
        client.write({"exit": True})
        assert await asyncio.wait_for(inbox.get(), 1) == {"exit": True}

        with pytest.raises(OSError):
            await connect_pipe(port)

        client.dispose()
        server.dispose()
        await client.wait_flushed()
        await server.wait_flushed()
