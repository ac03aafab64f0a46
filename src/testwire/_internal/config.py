"""Configuration loading for testwire."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from testwire._internal.errors import ConfigError
from testwire.engine.protocol import FrameworkOpts

if TYPE_CHECKING:
    from testwire._internal.types import EnvOverrides

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off", ""})


@dataclass(frozen=True)
class TestwireConfig:
    """Settings of one workspace folder.

    Attributes:
        cwd: Working directory of the worker processes.
        files: Test files to collect; empty lets pytest discover from ``cwd``.
        python_path: Interpreter used to start workers.
        python_args: Extra interpreter arguments.
        env: Environment overrides for workers; None unsets a variable.
        framework_opts: pytest options shared by every command.
        monkey_patch: Use pytest's own item locations for line numbers.
        hmr_entry: Module or file loaded by a long-lived hot-reload worker.
        prune_files: Only hand the files of the selected tests to a run.
        debugger_port: Port debugpy listens on for debug runs.
    """

    __test__ = False

    cwd: str = field(default_factory=os.getcwd)
    files: tuple[str, ...] = ()
    python_path: str = sys.executable
    python_args: tuple[str, ...] = ()
    env: EnvOverrides = field(default_factory=dict)
    framework_opts: FrameworkOpts = field(default_factory=FrameworkOpts)
    monkey_patch: bool = True
    hmr_entry: str | None = None
    prune_files: bool = False
    debugger_port: int = 9229

    def validate(self) -> None:
        """Check combinations of settings that cannot work together.

        Raises:
            ConfigError: If a hot-reload entry is combined with an explicit
                file list or with a hard exit.
        """
        if self.hmr_entry is None:
            return
        if self.files:
            msg = "TESTWIRE_HMR_ENTRY is not compatible with TESTWIRE_FILES"
            raise ConfigError(msg)
        if self.framework_opts.exit:
            msg = "TESTWIRE_HMR_ENTRY is not compatible with TESTWIRE_EXIT"
            raise ConfigError(msg)


def _parse_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    msg = f"{name} must be a boolean, got: {raw!r}"
    raise ConfigError(msg)


def _parse_args(name: str) -> tuple[str, ...]:
    raw = os.environ.get(name, "")
    try:
        return tuple(shlex.split(raw))
    except ValueError as exc:
        msg = f"{name} is not a valid argument list: {exc}"
        raise ConfigError(msg) from None


def load_config() -> TestwireConfig:
    """Load configuration from environment variables with defaults.

    Environment variables:
        TESTWIRE_CWD: Working directory (default: current directory).
        TESTWIRE_FILES: Test files separated by ``os.pathsep``.
        TESTWIRE_PYTHON: Interpreter for workers (default: this one).
        TESTWIRE_PYTHON_ARGS: Extra interpreter arguments, shell-quoted.
        TESTWIRE_PYTEST_ARGS: Extra pytest arguments, shell-quoted.
        TESTWIRE_REQUIRES: Comma-separated modules imported at start-up.
        TESTWIRE_EXIT: Hard-exit workers when done (default: false).
        TESTWIRE_TIMEOUT: Per-test timeout in seconds.
        TESTWIRE_MONKEY_PATCH: Use pytest's item locations (default: true).
        TESTWIRE_HMR_ENTRY: Enable hot reload with this entry point.
        TESTWIRE_PRUNE_FILES: Restrict runs to files of selected tests.
        TESTWIRE_DEBUGGER_PORT: Debugger port (default: 9229).

    Returns:
        Populated TestwireConfig instance.

    Raises:
        ConfigError: If an environment variable has an invalid value.
    """
    cwd = os.path.abspath(os.environ.get("TESTWIRE_CWD") or os.getcwd())
    if not os.path.isdir(cwd):
        msg = f"TESTWIRE_CWD is not a directory: {cwd!r}"
        raise ConfigError(msg)

    files_str = os.environ.get("TESTWIRE_FILES", "")
    files = tuple(
        os.path.normpath(os.path.join(cwd, part)) for part in files_str.split(os.pathsep) if part
    )

    timeout: float | None = None
    timeout_str = os.environ.get("TESTWIRE_TIMEOUT")
    if timeout_str:
        try:
            timeout = float(timeout_str)
        except ValueError:
            msg = f"TESTWIRE_TIMEOUT must be a number, got: {timeout_str!r}"
            raise ConfigError(msg) from None
        if timeout <= 0:
            msg = f"TESTWIRE_TIMEOUT must be positive, got: {timeout}"
            raise ConfigError(msg)

    port_str = os.environ.get("TESTWIRE_DEBUGGER_PORT", "9229")
    try:
        debugger_port = int(port_str)
    except ValueError:
        msg = f"TESTWIRE_DEBUGGER_PORT must be an integer, got: {port_str!r}"
        raise ConfigError(msg) from None
    if not 1 <= debugger_port <= 65535:
        msg = f"TESTWIRE_DEBUGGER_PORT must be between 1 and 65535, got: {debugger_port}"
        raise ConfigError(msg)

    requires = tuple(
        part.strip() for part in os.environ.get("TESTWIRE_REQUIRES", "").split(",") if part.strip()
    )

    config = TestwireConfig(
        cwd=cwd,
        files=files,
        python_path=os.environ.get("TESTWIRE_PYTHON") or sys.executable,
        python_args=_parse_args("TESTWIRE_PYTHON_ARGS"),
        framework_opts=FrameworkOpts(
            args=_parse_args("TESTWIRE_PYTEST_ARGS"),
            requires=requires,
            exit=_parse_bool("TESTWIRE_EXIT", False),
            timeout=timeout,
        ),
        monkey_patch=_parse_bool("TESTWIRE_MONKEY_PATCH", True),
        hmr_entry=os.environ.get("TESTWIRE_HMR_ENTRY") or None,
        prune_files=_parse_bool("TESTWIRE_PRUNE_FILES", False),
        debugger_port=debugger_port,
    )
    config.validate()
    return config
