"""Worker process: receives WorkItems on a pipe and drives pytest.

Carrier selection, from the environment set up by the host:

* ``TESTWIRE_IPC_FD``: socket inherited from the host (default host mode);
* ``TESTWIRE_IPC_PORT``: TCP socket, ``TESTWIRE_IPC_ROLE`` is ``client``
  (connect) or ``server`` (accept one connection), ``TESTWIRE_IPC_HOST``
  defaults to ``127.0.0.1``; one command is served, then the worker exits;
* neither: single shot, the WorkItem is read from ``argv[1]`` and replies are
  written as JSON lines to stdout, test output goes to stderr.
"""

from __future__ import annotations

import asyncio
import json
import os
import socket
import sys

from testwire._internal.errors import ConfigError
from testwire._internal.logging import forward_logging, get_logger
from testwire.engine.pipe import InProcessPipe, accept_pipe, connect_pipe, open_socket_pipe
from testwire.worker.processor import PytestProcessor
from testwire.worker.queue import CommandQueue

logger = get_logger("worker")

IPC_FD_ENV = "TESTWIRE_IPC_FD"
IPC_PORT_ENV = "TESTWIRE_IPC_PORT"
IPC_HOST_ENV = "TESTWIRE_IPC_HOST"
IPC_ROLE_ENV = "TESTWIRE_IPC_ROLE"


def _install_uvloop() -> None:
    """Install uvloop as the event loop policy if available.

    Falls back silently to the default asyncio event loop on Windows
    or if uvloop is not installed.
    """
    if sys.platform == "win32":
        return

    try:
        import uvloop

        uvloop.install()
    except ImportError:
        logger.debug("uvloop not available, using default asyncio event loop")


async def serve(queue: CommandQueue, processor: PytestProcessor) -> None:
    """Run a command queue until it is stopped."""
    forward_logging(queue.send_info)
    queue.start(processor)
    await queue.wait_stopped()


async def _serve_from_env(argv: list[str]) -> None:
    fd = os.environ.get(IPC_FD_ENV)
    port = os.environ.get(IPC_PORT_ENV)

    if fd:
        sock = socket.socket(fileno=int(fd))
        pipe = await open_socket_pipe(sock)
        await serve(CommandQueue(pipe), PytestProcessor())
        await pipe.wait_flushed()
        return

    if port:
        host = os.environ.get(IPC_HOST_ENV, "127.0.0.1")
        role = os.environ.get(IPC_ROLE_ENV, "client")
        if role == "server":
            stream = await accept_pipe(int(port), host)
        elif role == "client":
            stream = await connect_pipe(int(port), host)
        else:
            msg = f"{IPC_ROLE_ENV} must be 'client' or 'server', got: {role!r}"
            raise ConfigError(msg)
        await serve(CommandQueue(stream, exit_when_idle=True), PytestProcessor())
        await stream.wait_flushed()
        return

    if len(argv) < 2:
        msg = "No IPC channel configured and no WorkItem given on the command line"
        raise ConfigError(msg)

    out = sys.stdout

    def _emit(message: object) -> None:
        out.write(json.dumps(message) + "\n")
        out.flush()

    single = InProcessPipe(_emit)
    queue = CommandQueue(single, exit_when_idle=True)
    processor = PytestProcessor(stdout=sys.__stderr__, stderr=sys.__stderr__)
    forward_logging(queue.send_info)
    queue.start(processor)
    single.feed(json.loads(argv[1]))
    await queue.wait_stopped()


def main(argv: list[str] | None = None) -> int:
    _install_uvloop()
    try:
        asyncio.run(_serve_from_env(sys.argv if argv is None else argv))
    except KeyboardInterrupt:
        return 130
    except ConfigError as exc:
        print(f"testwire worker: {exc}", file=sys.stderr)
        return 2
    return 0
