"""testwire: run pytest in long-lived worker processes over a multiplexed pipe."""

from __future__ import annotations

from testwire._internal.config import TestwireConfig, load_config
from testwire.adapter import AdapterCore
from testwire.engine.instance import WorkerInstance
from testwire.engine.protocol import FrameworkOpts, SuiteInfo, TestInfo, WorkItem
from testwire.hot_reload import signal_reload

__version__ = "0.1.0"

__all__ = [
    "AdapterCore",
    "FrameworkOpts",
    "SuiteInfo",
    "TestInfo",
    "TestwireConfig",
    "WorkItem",
    "WorkerInstance",
    "load_config",
    "signal_reload",
]
