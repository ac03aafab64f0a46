"""pytest binding executed inside a worker process."""

from __future__ import annotations

import asyncio
import hashlib
import importlib
import importlib.util
import os
import sys
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

import pytest

from testwire import hot_reload
from testwire._internal.logging import get_logger
from testwire.engine.protocol import FinishedMessage, NoTestMessage, SuiteMessage
from testwire.worker.output import session_output
from testwire.worker.plugins import CollectorPlugin, ReporterPlugin, build_tree

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable

    from testwire.engine.protocol import FrameworkOpts, SuiteInfo, WorkItem
    from testwire.worker.queue import QueueWriter

logger = get_logger("worker.processor")

HMR_NOT_HOOKED = (
    "Hot reload is enabled but testwire.hot_reload.signal_reload() "
    "was never called while the tests were collected."
)


class HotReloadStatus(Enum):
    UNSUPPORTED = auto()
    SUPPORTED = auto()
    EXIT = auto()


class PytestProcessor:
    """Collects and runs tests with pytest on behalf of a command queue.

    pytest is not reentrant: every invocation runs in a worker thread, one
    at a time, guarded by a lock.

    Args:
        stdout: Stream receiving session-tagged output of the code under
            test; defaults to the process' original stdout.
        stderr: Same for stderr.
    """

    def __init__(self, stdout: TextIO | None = None, stderr: TextIO | None = None) -> None:
        self._stdout = stdout
        self._stderr = stderr
        self._lock = asyncio.Lock()
        self._cwd = Path.cwd()
        self._opts: FrameworkOpts | None = None
        self._monkey_patch = False
        self._enable_hmr = False
        self._baseline_modules: set[str] = set()
        self._hmr_status = HotReloadStatus.UNSUPPORTED
        self._reload = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._file_hashes: dict[str, str] = {}
        self._collecting = False

    async def initialize(self, writer: QueueWriter, item: WorkItem) -> None:
        """Apply the process-wide settings of the first WorkItem."""
        self._loop = asyncio.get_running_loop()
        self._cwd = Path(item.cwd).resolve()
        os.chdir(self._cwd)
        if str(self._cwd) not in sys.path:
            sys.path.insert(0, str(self._cwd))

        for name, value in item.env.items():
            if value is None:
                os.environ.pop(name, None)
            else:
                os.environ[name] = value

        self._opts = item.framework_opts
        self._monkey_patch = item.monkey_patch
        self._enable_hmr = item.enable_hmr
        writer.send_info(f"Using pytest {pytest.__version__} from {Path(pytest.__file__).parent}")

        for module in self._opts.requires:
            writer.send_info(f"Importing {module}")
            importlib.import_module(module)

        self._baseline_modules = set(sys.modules)

    def dispose(self) -> None:
        self._hmr_status = HotReloadStatus.EXIT
        hot_reload.uninstall()
        self._reload.set()

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def load_tests(self, writer: QueueWriter, test_files: tuple[str, ...]) -> None:
        """Collect the tree; with hot reload, keep re-sending it on every signal."""
        writer.send_info("Loading files")
        if self._enable_hmr:
            hot_reload.install(self._on_reload_signal)

        tree = await self._collect(writer, test_files)
        if tree is not None:
            hot = "initial" if self._hmr_status is HotReloadStatus.SUPPORTED else None
            writer.send_message(SuiteMessage(suite=tree, hot_reload=hot))

            if self._enable_hmr and self._hmr_status is HotReloadStatus.UNSUPPORTED:
                writer.send_error(HMR_NOT_HOOKED)

            while self._hmr_status is HotReloadStatus.SUPPORTED:
                await self._reload.wait()
                self._reload.clear()
                if self._hmr_status is not HotReloadStatus.SUPPORTED:
                    break
                writer.send_info("Reloading tests")
                tree = await self._collect(writer, test_files, detect_changes=True)
                if tree is not None:
                    writer.send_message(SuiteMessage(suite=tree, hot_reload="update"))

    async def run_tests(
        self,
        writer: QueueWriter,
        test_files: tuple[str, ...],
        tests: tuple[str, ...] | None,
    ) -> None:
        reporter = ReporterPlugin(writer.send_message, selected=tests)
        writer.send_info("Running tests")
        async with self._lock:
            await asyncio.to_thread(
                self._invoke,
                writer.session_id,
                ["-s", "-q", "-p", "no:cacheprovider", *test_files],
                reporter,
            )
        writer.send_message(FinishedMessage())

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _on_reload_signal(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._handle_reload_signal)

    def _handle_reload_signal(self) -> None:
        if self._hmr_status is HotReloadStatus.UNSUPPORTED:
            self._hmr_status = HotReloadStatus.SUPPORTED
            logger.info("Hot reload hook detected")
        elif self._hmr_status is HotReloadStatus.SUPPORTED and not self._collecting:
            # signals raised by our own re-collection are not changes
            self._reload.set()

    async def _collect(
        self,
        writer: QueueWriter,
        test_files: tuple[str, ...],
        *,
        detect_changes: bool = False,
    ) -> SuiteInfo | None:
        collector = CollectorPlugin()
        async with self._lock:
            self._collecting = True
            try:
                exit_code = await asyncio.to_thread(
                    self._invoke,
                    writer.session_id,
                    ["--collect-only", "-qq", "-s", "-p", "no:cacheprovider", *test_files],
                    collector,
                )
            finally:
                self._collecting = False

        if collector.errors:
            writer.send_error("\n\n".join(collector.errors))
            return None
        if exit_code not in (pytest.ExitCode.OK, pytest.ExitCode.NO_TESTS_COLLECTED):
            writer.send_error(f"pytest exited with {pytest.ExitCode(exit_code).name} while collecting")
            return None
        if not collector.items:
            writer.send_message(NoTestMessage())
            return None

        files = {str(item.path) for item in collector.items}
        changed = self._changed_files(files)
        writer.send_info(f"Collected {len(collector.items)} tests")
        return build_tree(
            collector.items,
            use_reportinfo=self._monkey_patch,
            changed_files=changed if detect_changes else (),
        )

    def _changed_files(self, files: Iterable[str]) -> Collection[str]:
        """Update the content hashes and return files that differ from last time."""
        changed: set[str] = set()
        for file in files:
            try:
                digest = hashlib.sha1(Path(file).read_bytes(), usedforsecurity=False).hexdigest()
            except OSError:
                continue
            if self._file_hashes.get(file) != digest:
                changed.add(file)
            self._file_hashes[file] = digest
        return changed

    def _invoke(self, session_id: int, args: list[str], plugin: object) -> int:
        """Run pytest in the calling thread with output tagged for the session."""
        self._purge_modules()
        argv = [f"--rootdir={self._cwd}", *self._framework_args(), *args]
        logger.debug("pytest %s", " ".join(argv))
        with session_output(session_id, self._stdout, self._stderr):
            return int(pytest.main(argv, plugins=[plugin]))

    def _framework_args(self) -> list[str]:
        if self._opts is None:
            return []
        args = list(self._opts.args)
        if self._opts.timeout is not None and importlib.util.find_spec("pytest_timeout") is not None:
            # pytest runs in a worker thread, where the signal method cannot arm alarms
            args += ["-o", f"timeout={self._opts.timeout}", "-o", "timeout_method=thread"]
        return args

    def _purge_modules(self) -> None:
        """Forget modules imported from the project so the next session sees fresh code."""
        for name, module in list(sys.modules.items()):
            if name in self._baseline_modules or name.startswith("testwire"):
                continue
            file = getattr(module, "__file__", None)
            if file and Path(file).resolve().is_relative_to(self._cwd):
                del sys.modules[name]
