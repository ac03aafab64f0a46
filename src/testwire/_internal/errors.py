"""Custom exception hierarchy for testwire."""

from __future__ import annotations


class TestwireError(Exception):
    """Base exception for all testwire errors.

    Catch this to handle any failure raised by the host, the worker or the
    wire protocol with a single except clause.
    """

    __test__ = False


class ConfigError(TestwireError):
    """Raised when configuration is invalid or missing.

    Examples:
        - An environment variable has an invalid value.
        - An HMR entry point is combined with an explicit file list.
    """


class ProtocolError(TestwireError):
    """Raised when a message read from a pipe does not match the wire schema.

    Examples:
        - A structured message has an unknown ``type``.
        - A WorkItem is missing its ``action``.
    """


class WorkerError(TestwireError):
    """Raised when a worker process fails at the process or transport level.

    Attributes:
        code: Process exit code, if the process exited.
        signal: Name of the terminating signal, if any.
    """

    def __init__(self, message: str, *, code: int | None = None, signal: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.signal = signal
