"""Spawning worker processes.

The host talks to a worker through a socket pair: one end stays in the
host, the other is inherited by the child (``pass_fds``) and announced in
``TESTWIRE_IPC_FD``. The child's stdout and stderr stay ordinary pipes so
output of the code under test can be captured line by line.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import socket
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from testwire._internal.errors import WorkerError
from testwire._internal.logging import get_logger
from testwire.engine.pipe import open_socket_pipe

if TYPE_CHECKING:
    from collections.abc import Mapping

    from testwire._internal.config import TestwireConfig
    from testwire.engine.pipe import Pipe

logger = get_logger("engine.launcher")

IPC_FD_ENV = "TESTWIRE_IPC_FD"
WORKER_MODULE = "testwire.worker"


@dataclass(frozen=True)
class WorkerConfig:
    """How worker processes of one instance are launched.

    Attributes:
        python_path: Interpreter running the worker.
        python_args: Extra interpreter arguments (e.g. ``-X dev``).
        env: Overrides applied to the inherited environment; None unsets.
        hmr: Allocate a fresh session id per execute and keep workers alive.
        debugger_port: Port used when a debug launch is requested.
        worker_module: Module run with ``-m``; a custom launcher may wrap
            the default worker.
    """

    python_path: str
    python_args: tuple[str, ...] = ()
    env: Mapping[str, str | None] = field(default_factory=dict)
    hmr: bool = False
    debugger_port: int | None = None
    worker_module: str = WORKER_MODULE

    @classmethod
    def from_config(cls, config: TestwireConfig) -> WorkerConfig:
        return cls(
            python_path=config.python_path,
            python_args=config.python_args,
            env=config.env,
            hmr=config.hmr_entry is not None,
            debugger_port=config.debugger_port,
        )

    def command(self, *, debug: bool = False) -> list[str]:
        argv = [self.python_path, *self.python_args]
        if debug and self.debugger_port is not None:
            argv += ["-m", "debugpy", "--listen", f"127.0.0.1:{self.debugger_port}"]
        argv += ["-m", self.worker_module]
        return argv

    def process_env(self, extra: Mapping[str, str]) -> dict[str, str]:
        env = dict(os.environ)
        for key, value in self.env.items():
            if value is None:
                env.pop(key, None)
            else:
                env[key] = value
        env["PYTHONUNBUFFERED"] = "1"
        env.update(extra)
        return env


class WorkerProcess(Protocol):
    """A running worker as seen by a worker instance."""

    pid: int | None
    pipe: Pipe
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None

    def kill(self) -> None: ...

    async def wait(self) -> int: ...


class SubprocessWorker:
    """A worker running in a child interpreter."""

    def __init__(self, process: asyncio.subprocess.Process, pipe: Pipe) -> None:
        self._process = process
        self.pid: int | None = process.pid
        self.pipe = pipe
        self.stdout = process.stdout
        self.stderr = process.stderr

    def kill(self) -> None:
        with contextlib.suppress(ProcessLookupError):
            self._process.kill()

    async def wait(self) -> int:
        return await self._process.wait()


async def launch_worker(config: WorkerConfig, debug: bool = False) -> SubprocessWorker:
    """Start a worker process connected through an inherited socket.

    Raises:
        WorkerError: If the interpreter cannot be started.
    """
    host_sock, child_sock = socket.socketpair()
    try:
        try:
            process = await asyncio.create_subprocess_exec(
                *config.command(debug=debug),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=config.process_env({IPC_FD_ENV: str(child_sock.fileno())}),
                pass_fds=(child_sock.fileno(),),
            )
        except OSError as exc:
            host_sock.close()
            msg = f"Failed to start worker with {config.python_path}: {exc}"
            raise WorkerError(msg) from exc
    finally:
        child_sock.close()

    logger.debug("Started worker process: pid=%d", process.pid)
    pipe = await open_socket_pipe(host_sock)
    return SubprocessWorker(process, pipe)


def describe_exit(returncode: int | None) -> WorkerError | None:
    """Translate an asyncio return code into an error, None for a clean exit."""
    if not returncode:
        return None
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return WorkerError(f"Worker killed by {name}", code=None, signal=name)
    return WorkerError(f"Worker exited with code {returncode}", code=returncode)
