"""Shared type aliases for testwire."""

from __future__ import annotations

from typing import Any, Literal

# Environment overrides; ``None`` unsets the variable in the worker.
EnvOverrides = dict[str, str | None]

# Any value that survives ``json.dumps``/``json.loads``.
JsonValue = Any

# Action requested by a WorkItem.
Action = Literal["load", "run"]

# What a session asks its worker instance to do after a message.
Disposition = Literal["stop", "continue"]

# States reported for a single test.
TestState = Literal["running", "passed", "failed", "skipped", "errored"]

# States reported for a suite during a run.
SuiteState = Literal["running", "completed"]

# Hot-reload marker carried by a suite tree.
HotReload = Literal["initial", "update"]
