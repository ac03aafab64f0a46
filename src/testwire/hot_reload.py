"""Hot-reload hook for code running inside a testwire worker.

A project opts into hot reload by calling :func:`signal_reload` once while
its tests are being collected (typically from ``conftest.py``, after
starting its own file watcher), and again every time its code changed::

    from testwire.hot_reload import signal_reload

    signal_reload()                      # announce support
    observer.schedule(lambda _: signal_reload(), ...)

Outside a worker with hot reload enabled, calls are no-ops.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

_lock = threading.Lock()
_hook: Callable[[], None] | None = None


def install(hook: Callable[[], None]) -> None:
    """Register the worker's reload callback; replaces any previous one."""
    global _hook
    with _lock:
        _hook = hook


def uninstall() -> None:
    global _hook
    with _lock:
        _hook = None


def signal_reload() -> bool:
    """Tell the worker that the code under test changed.

    Safe to call from any thread.

    Returns:
        True if a worker was listening.
    """
    with _lock:
        hook = _hook
    if hook is None:
        return False
    hook()
    return True
