"""Logging setup for testwire hosts and worker processes."""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable


class _JsonFormatter(logging.Formatter):
    """One-line JSON log formatter.

    Emits objects with keys: timestamp, level, logger, message, and
    ``session_id`` when the record was logged with ``extra={"session_id": n}``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        session_id = getattr(record, "session_id", None)
        if session_id is not None:
            log_entry["session_id"] = session_id
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


class PipeLogHandler(logging.Handler):
    """Forward log records of a worker process to the host as plain strings.

    Plain strings on the pipe are reserved for human-readable log lines,
    so the host logs them verbatim instead of decoding them.
    """

    def __init__(self, send: Callable[[str], object], level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._send = send
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._send(self.format(record))
        except Exception:  # noqa: BLE001
            self.handleError(record)


def setup_logging(
    level: int = logging.INFO,
    *,
    json_format: bool = False,
) -> logging.Logger:
    """Configure and return the root ``testwire`` logger.

    Subsequent calls are idempotent: handlers are not duplicated, only
    their level is updated.

    Args:
        level: Logging level (e.g., ``logging.DEBUG``). Defaults to INFO.
        json_format: If True, emit one JSON object per line.

    Returns:
        The configured ``testwire`` logger.
    """
    logger = logging.getLogger("testwire")
    logger.setLevel(level)

    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if json_format:
        formatter: logging.Formatter = _JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Prevent propagation to root logger to avoid duplicate output
    logger.propagate = False

    return logger


def forward_logging(send: Callable[[str], object], *, level: int = logging.INFO) -> logging.Handler:
    """Route the ``testwire`` logger of a worker process through its pipe.

    Replaces any stream handler: a worker's stderr belongs to the code
    under test, so worker diagnostics must not be mixed into it.

    Args:
        send: Callable writing one string message to the host.
        level: Minimum level forwarded.

    Returns:
        The installed handler, so callers can remove it on shutdown.
    """
    logger = logging.getLogger("testwire")
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    handler = PipeLogHandler(send, level)
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return handler


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the ``testwire`` namespace.

    Example: ``get_logger("engine.instance")`` returns
    ``logging.getLogger("testwire.engine.instance")``.
    """
    return logging.getLogger(f"testwire.{name}")
