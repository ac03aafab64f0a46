"""Session-tagged redirection of ``sys.stdout``/``sys.stderr`` in a worker."""

from __future__ import annotations

import contextlib
import io
import sys
import threading
from typing import TYPE_CHECKING, TextIO

from testwire.engine.protocol import format_output_line

if TYPE_CHECKING:
    from collections.abc import Iterator


class SessionStream(io.TextIOBase):
    """Text stream prefixing every complete line with ``"<sessionId>:"``.

    Partial lines are buffered until their newline arrives or the stream is
    flushed, so the host always sees one prefix per line.
    """

    def __init__(self, target: TextIO, session_id: int) -> None:
        super().__init__()
        self._target = target
        self._session_id = session_id
        self._buffer = ""
        self._lock = threading.Lock()

    @property
    def encoding(self) -> str:  # type: ignore[override]
        return getattr(self._target, "encoding", None) or "utf-8"

    def writable(self) -> bool:
        return True

    def isatty(self) -> bool:
        return False

    def write(self, text: str) -> int:
        with self._lock:
            self._buffer += text
            *lines, self._buffer = self._buffer.split("\n")
            for line in lines:
                self._target.write(format_output_line(self._session_id, line) + "\n")
            if lines:
                self._target.flush()
        return len(text)

    def flush(self) -> None:
        with self._lock:
            if self._buffer:
                self._target.write(format_output_line(self._session_id, self._buffer) + "\n")
                self._buffer = ""
            self._target.flush()


@contextlib.contextmanager
def session_output(
    session_id: int,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
) -> Iterator[None]:
    """Route ``print`` output of the current command to the given session.

    Lines go to the process' original streams unless other targets are given.
    """
    saved_out, saved_err = sys.stdout, sys.stderr
    out = SessionStream(stdout or sys.__stdout__ or saved_out, session_id)
    err = SessionStream(stderr or sys.__stderr__ or saved_err, session_id)
    sys.stdout, sys.stderr = out, err
    try:
        yield
    finally:
        out.flush()
        err.flush()
        sys.stdout, sys.stderr = saved_out, saved_err
