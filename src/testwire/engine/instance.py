"""Host-side owner of one worker process and the sessions multiplexed on it."""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

from testwire._internal.errors import ProtocolError, WorkerError
from testwire._internal.logging import get_logger
from testwire.engine.launcher import describe_exit, launch_worker
from testwire.engine.protocol import ExitRequest, decode_event, parse_output_line
from testwire.engine.session import LoadSession, RunSession, WorkerSession

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from testwire._internal.types import JsonValue
    from testwire.engine.events import EventHub
    from testwire.engine.launcher import WorkerConfig, WorkerProcess
    from testwire.engine.protocol import WorkItem

    Launcher = Callable[[WorkerConfig, bool], Awaitable[WorkerProcess]]

logger = get_logger("engine.instance")

# Grace period for in-flight messages and output after the process exited
_DRAIN_TIMEOUT = 2.0


class _Generation:
    """One spawned process and the sessions it serves; finished at most once."""

    def __init__(self, process: WorkerProcess) -> None:
        self.process = process
        self.sessions: dict[int, WorkerSession] = {}
        self.finished = False
        self.tasks: list[asyncio.Task[None]] = []


class WorkerInstance:
    """Spawns or reuses a worker process and routes its events to sessions.

    The instance is the single owner of its session map and of the first
    WorkItem it was started with. Every way a process can end (clean exit,
    crash, :meth:`kill`) funnels into :meth:`_do_finish`, which resolves
    every open session of that process exactly once.

    Attributes:
        config: Launch configuration of the worker processes.
        spawn_count: Number of processes started so far.
    """

    def __init__(
        self,
        hub: EventHub,
        config: WorkerConfig,
        *,
        launcher: Launcher = launch_worker,
    ) -> None:
        self._hub = hub
        self.config = config
        self._launcher = launcher

        self._generation: _Generation | None = None
        self._spawn_lock = asyncio.Lock()
        self._next_session_id = 0
        self._exit_handlers: list[Callable[[], None]] = []
        self._hmr_handlers: list[Callable[[], None]] = []
        self._first_args: WorkItem | None = None
        self._watchers: dict[asyncio.Task[None], _Generation] = {}
        self.spawn_count = 0

    @property
    def is_alive(self) -> bool:
        return self._generation is not None

    @property
    def pid(self) -> int | None:
        return self._generation.process.pid if self._generation is not None else None

    @property
    def has_processes(self) -> bool:
        """True while a process started by this instance has not been reaped."""
        return bool(self._watchers)

    @property
    def open_sessions(self) -> int:
        return len(self._generation.sessions) if self._generation is not None else 0

    # -------------------------------------------------------------------------
    # Registration hooks
    # -------------------------------------------------------------------------

    def on_exit(self, handler: Callable[[], None]) -> None:
        """Call ``handler`` when the worker process ends."""
        self._exit_handlers.append(handler)

    def on_detect_hmr(self, handler: Callable[[], None]) -> None:
        """Call ``handler`` once the worker confirms its hot-reload hook."""
        self._hmr_handlers.append(handler)

    def detected_hmr(self) -> None:
        handlers, self._hmr_handlers = self._hmr_handlers, []
        for handler in handlers:
            handler()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def spawn(self, *, debug: bool = False) -> None:
        """Launch the worker process unless one is already running.

        Raises:
            WorkerError: If the process could not be started.
        """
        async with self._spawn_lock:
            if self._generation is not None:
                return

            process = await self._launcher(self.config, debug)
            self.spawn_count += 1
            generation = _Generation(process)
            self._generation = generation
            logger.info("Worker process started: pid=%s", process.pid)

            process.pipe.subscribe(lambda raw: self._on_message(generation, raw))
            loop = asyncio.get_running_loop()
            if process.stdout is not None:
                generation.tasks.append(
                    loop.create_task(self._pump_output(generation, process.stdout, stderr=False))
                )
            if process.stderr is not None:
                generation.tasks.append(
                    loop.create_task(self._pump_output(generation, process.stderr, stderr=True))
                )
            watcher = loop.create_task(self._watch(generation), name=f"testwire-watch-{process.pid}")
            generation.tasks.append(watcher)
            self._watchers[watcher] = generation
            watcher.add_done_callback(self._watchers.pop)

    async def execute(
        self,
        item: WorkItem,
        changed_files: Iterable[str] | None = None,
    ) -> WorkerSession:
        """Send a WorkItem to the worker and return its session.

        Returns as soon as the item is sent; await the session's
        ``wait_initial_run``/``wait_end`` for results. A worker that cannot
        be started yields a session already finished with the error.
        """
        if self.config.hmr:
            item = item.with_session(self._allocate_session_id())
        session_id = item.session_id

        session: WorkerSession
        if item.action == "run":
            session = RunSession(self._hub, self, session_id)
        else:
            session = LoadSession(
                self._hub,
                self,
                session_id,
                debugger_port=item.debugger_port,
                changed_files=changed_files,
            )

        try:
            await self.spawn()
        except WorkerError as exc:
            logger.error("Could not start worker: %s", exc)
            self._do_finish(None, exc)
            session.finished(exc)
            return session

        generation = self._generation
        assert generation is not None

        displaced = generation.sessions.get(session_id)
        if displaced is not None:
            logger.warning("Session %d replaced before it finished", session_id)
            displaced.finished(WorkerError("Session was replaced by a newer command"))
        generation.sessions[session_id] = session

        if self._first_args is None:
            self._first_args = item

        logger.debug("Sending %s command for session %d", item.action, session_id)
        generation.process.pipe.write(item.to_wire())
        return session

    def accepts(self, item: WorkItem) -> bool:
        """Return True if ``item`` can be served without a new process."""
        if self._first_args is None:
            return True
        return self._first_args.is_compatible(item)

    def stop(self) -> None:
        """Ask the worker to exit, killing it when a graceful exit is unsafe."""
        generation = self._generation
        if generation is None:
            return
        self._generation = None

        pipe = generation.process.pipe
        hard_exit = self._first_args is not None and self._first_args.framework_opts.exit
        if hard_exit or not pipe.connected:
            generation.process.kill()
            return
        try:
            pipe.write(ExitRequest().to_wire())
        except (OSError, RuntimeError):
            logger.warning("Failed to gracefully stop worker process, killing it")
            generation.process.kill()

    def kill(self) -> None:
        """Terminate the worker now and fail every open session."""
        generation = self._generation
        if generation is None:
            return
        self._generation = None
        generation.process.kill()
        generation.process.pipe.dispose()
        self._do_finish(generation, WorkerError("Worker process was killed"))

    async def wait_exit(self, timeout: float | None = None) -> None:
        """Wait until every process started by this instance has exited.

        Processes still running after ``timeout`` seconds are killed.
        """
        if not self._watchers:
            return
        _, pending = await asyncio.wait(set(self._watchers), timeout=timeout)
        if not pending:
            return
        for task in pending:
            generation = self._watchers.get(task)
            if generation is not None:
                logger.warning("Worker process %s did not exit in time, killing it", generation.process.pid)
                generation.process.kill()
        await asyncio.wait(pending)

    # -------------------------------------------------------------------------
    # Event routing
    # -------------------------------------------------------------------------

    def _allocate_session_id(self) -> int:
        session_id = self._next_session_id
        self._next_session_id += 1
        return session_id

    def _on_message(self, generation: _Generation, raw: JsonValue) -> None:
        try:
            event = decode_event(raw)
        except ProtocolError as exc:
            logger.warning("Dropping malformed message from worker: %s", exc)
            return

        if isinstance(event, str):
            logger.info("Worker: %s", event)
            return
        logger.debug("Received %r", raw)

        session = generation.sessions.get(event.session_id)
        if session is None:
            logger.warning(
                "Received message from worker for an unknown session: %d", event.session_id
            )
            return

        if session.process_message(event) == "stop":
            self._stop_session(generation, event.session_id)

    async def _pump_output(
        self,
        generation: _Generation,
        stream: asyncio.StreamReader,
        *,
        stderr: bool,
    ) -> None:
        while True:
            try:
                line = await stream.readline()
            except (ConnectionError, ValueError) as exc:
                logger.debug("Output stream closed: %s", exc)
                return
            if not line:
                return
            session_id, text = parse_output_line(line.decode("utf-8", errors="replace"))
            session = generation.sessions.get(session_id)
            if session is None:
                continue
            if stderr:
                session.on_stderr(text)
            else:
                session.on_stdout(text)

    async def _watch(self, generation: _Generation) -> None:
        process = generation.process
        try:
            returncode = await process.wait()
        except Exception as exc:  # noqa: BLE001
            logger.error("Error from worker process: %s", exc)
            self._forget(generation)
            self._do_finish(generation, WorkerError(str(exc)))
            return

        # let the pipe and output readers deliver what the worker sent last
        pending = [t for t in generation.tasks if t is not asyncio.current_task()]
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(
                asyncio.gather(process.pipe.wait_closed(), *pending, return_exceptions=True),
                timeout=_DRAIN_TIMEOUT,
            )

        logger.info("Worker finished with return code %s", returncode)
        self._forget(generation)
        process.pipe.dispose()
        self._do_finish(generation, describe_exit(returncode))

    def _forget(self, generation: _Generation) -> None:
        if self._generation is generation:
            self._generation = None

    def _stop_session(self, generation: _Generation, session_id: int) -> None:
        session = generation.sessions.pop(session_id, None)
        if session is None:
            return
        session.finished()

        # another session still uses this worker
        if generation.sessions or generation is not self._generation:
            return
        self.stop()

    def _do_finish(self, generation: _Generation | None, error: WorkerError | None = None) -> None:
        if generation is not None:
            if generation.finished:
                return
            generation.finished = True

        for handler in list(self._exit_handlers):
            handler()

        if generation is None:
            return
        sessions = list(generation.sessions.values())
        generation.sessions.clear()
        for session in sessions:
            session.finished(error)
