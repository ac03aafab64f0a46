"""Editor-facing core: turns load/run requests into worker invocations."""

from __future__ import annotations

import logging
import traceback
from typing import TYPE_CHECKING

from testwire._internal.logging import get_logger
from testwire.engine.events import (
    EventHub,
    LoadFinishedEvent,
    LoadStartedEvent,
    RunFinishedEvent,
    RunStartedEvent,
)
from testwire.engine.instance import WorkerInstance
from testwire.engine.launcher import WorkerConfig, launch_worker
from testwire.engine.protocol import WorkItem
from testwire.engine.session import collect_tests

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from testwire._internal.config import TestwireConfig
    from testwire.engine.instance import Launcher
    from testwire.engine.protocol import SuiteInfo, TestInfo

logger = get_logger("adapter")


class AdapterCore:
    """Loads and runs the tests of one workspace folder.

    Results are published on :attr:`hub`. Every worker created is tracked
    until its process exits; with hot reload enabled, the worker that
    confirmed its hook is kept and reused by later runs.

    Args:
        config: Settings of the workspace folder.
        output: Sink for raw worker output during runs.
        launcher: Starts worker processes; replaced in tests.
    """

    def __init__(
        self,
        config: TestwireConfig,
        *,
        output: Callable[[str], object] | None = None,
        launcher: Launcher = launch_worker,
    ) -> None:
        self.config = config
        self.hub = EventHub(workspace_path=config.cwd, output=output)
        self._launcher = launcher
        self.all_workers: list[WorkerInstance] = []
        self.hmr_worker: WorkerInstance | None = None
        # every instance whose process may still need reaping, killed ones included
        self._instances: list[WorkerInstance] = []

    @property
    def nodes_by_id(self) -> dict[str, SuiteInfo | TestInfo]:
        return self.hub.nodes_by_id

    @property
    def _log_enabled(self) -> bool:
        return logger.isEnabledFor(logging.DEBUG)

    def create_worker(self) -> WorkerInstance:
        worker = WorkerInstance(self.hub, WorkerConfig.from_config(self.config), launcher=self._launcher)
        self.all_workers.append(worker)
        self._instances = [w for w in self._instances if w.has_processes or w.is_alive]
        self._instances.append(worker)

        def _forget() -> None:
            if self.hmr_worker is worker:
                self.hmr_worker = None
            if worker in self.all_workers:
                self.all_workers.remove(worker)

        worker.on_exit(_forget)
        return worker

    async def load(self, changed_files: Iterable[str] | None = None) -> None:
        """Collect the test tree and publish it on the tests emitter.

        With hot reload, file-change reloads are ignored (the running
        worker streams updates itself) and a full reload replaces every
        worker.
        """
        try:
            logger.info("Loading test files of %s", self.config.cwd)
            config = self.config
            config.validate()

            if config.hmr_entry is not None:
                if changed_files is not None:
                    return
                for worker in list(self.all_workers):
                    worker.kill()

            self.hub.tests_emitter.fire(LoadStartedEvent())
            worker = self.create_worker()

            if config.hmr_entry is not None:

                def _keep_for_reuse() -> None:
                    if self.hmr_worker is not None and self.hmr_worker is not worker:
                        self.hmr_worker.kill()
                    self.hmr_worker = worker

                worker.on_detect_hmr(_keep_for_reuse)

            item = WorkItem(
                action="load",
                test_files=self._test_files(),
                framework_opts=config.framework_opts,
                env=config.env,
                cwd=config.cwd,
                monkey_patch=config.monkey_patch,
                enable_hmr=config.hmr_entry is not None,
                log_enabled=self._log_enabled,
            )
            self.hub.nodes_by_id.clear()
            session = await worker.execute(item, changed_files)
            await session.wait_initial_run()
        except Exception as exc:
            logger.exception("Error while loading tests")
            self.hub.tests_emitter.fire(
                LoadFinishedEvent(
                    error_message=(
                        "Unexpected error while initialising the worker\n\n"
                        + "".join(traceback.format_exception(exc))
                    )
                )
            )

    async def run(self, tests: Iterable[str], *, debug: bool = False) -> None:
        """Run the given suites or tests and publish their states.

        Ids are expanded to leaf tests through the tree of the last load;
        unknown ids are ignored.
        """
        test_ids = list(tests)
        try:
            logger.info("Running test(s) %s of %s", test_ids, self.config.cwd)
            config = self.config
            self.hub.test_states_emitter.fire(RunStartedEvent(tests=tuple(test_ids)))

            infos: list[TestInfo] = []
            for node_id in test_ids:
                node = self.hub.nodes_by_id.get(node_id)
                if node is not None:
                    infos.extend(collect_tests(node))
            if not infos:
                logger.info("Nothing to run")
                self.hub.test_states_emitter.fire(RunFinishedEvent())
                return

            item = WorkItem(
                action="run",
                test_files=self._run_files(infos),
                tests=tuple(dict.fromkeys(info.id for info in infos)),
                framework_opts=config.framework_opts,
                env=config.env,
                cwd=config.cwd,
                monkey_patch=config.monkey_patch,
                enable_hmr=config.hmr_entry is not None,
                debugger_port=config.debugger_port if debug and config.hmr_entry is None else None,
                log_enabled=self._log_enabled,
            )

            worker: WorkerInstance | None = None
            if self.hmr_worker is not None:
                if self.hmr_worker.accepts(item):
                    worker = self.hmr_worker
                else:
                    logger.info("Run is not compatible with the hot-reload worker, starting a new one")
            if worker is None:
                worker = self.create_worker()

            if debug:
                await worker.spawn(debug=True)
            session = await worker.execute(item)
            await session.wait_end()
        except Exception as exc:
            logger.exception("Error while running tests")
            self.hub.test_states_emitter.fire(RunFinishedEvent(error_message=str(exc)))

    def cancel(self) -> None:
        """Kill every running worker process."""
        logger.info("Killing running test processes")
        for worker in list(self.all_workers):
            worker.kill()
        self.all_workers = []

    async def close(self, timeout: float = 5.0) -> None:
        """Stop every worker and wait for the processes to exit."""
        for worker in list(self.all_workers):
            worker.stop()
        for worker in self._instances:
            await worker.wait_exit(timeout)
        self._instances = []

    def _test_files(self) -> tuple[str, ...]:
        if self.config.hmr_entry is not None:
            return (self.config.hmr_entry,)
        return self.config.files

    def _run_files(self, infos: list[TestInfo]) -> tuple[str, ...]:
        if self.config.hmr_entry is None and self.config.prune_files:
            files = tuple(dict.fromkeys(info.file for info in infos if info.file is not None))
            if files:
                logger.debug("Using test files %s", files)
                return files
        return self._test_files()
