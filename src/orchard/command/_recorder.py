"""Stream recording: capture buffers, raw log files and prefixed debug forwarding.

One StreamRecorder sits behind each piped child stream. The copier task feeds
it every chunk read from the pipe; the recorder fans the chunk out to

- the in-memory record (optionally a circular buffer of ``record_limit`` bytes),
- a raw log file (truncated and restarted once it grows past ``log_limit``),
- a debug sink (our own stdout/stderr), one prefixed line per write.

The record and the log file receive the exact bytes the child wrote. Only the
debug sink sees decoded text, and only whole lines.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, TextIO

from rich.color import ColorSystem
from rich.style import Style

from orchard.errors import StreamCopyError

# ---------------------------------------------------------------------------
# Debug prefix colors
# ---------------------------------------------------------------------------

_PALETTE = (
    "cyan",
    "green",
    "yellow",
    "blue",
    "magenta",
    "bright_cyan",
    "bright_green",
    "bright_yellow",
    "bright_blue",
    "bright_magenta",
)
_colors = itertools.cycle(_PALETTE)


def next_terminal_color() -> str:
    """Rotate through the palette so concurrent processes are told apart."""
    return next(_colors)


def colorize(text: str, color: str) -> str:
    return Style(color=color).render(text, color_system=ColorSystem.STANDARD)


# ---------------------------------------------------------------------------
# Log files
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LogFile:
    """Where a stream's raw bytes are logged.

    The file is truncated when the process is spawned unless ``append`` is set.
    """

    path: Path
    append: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))


class LogHandle:
    """An open log file shared by every stream that logs to the same path."""

    def __init__(self, log_file: LogFile, limit: int | None) -> None:
        log_file.path.parent.mkdir(parents=True, exist_ok=True)
        self.path = log_file.path
        self._fh: BinaryIO = open(log_file.path, "ab" if log_file.append else "wb")  # noqa: SIM115
        self._limit = limit
        self._written = 0

    def write(self, data: bytes) -> None:
        self._written += len(data)
        if self._limit is not None and self._written > self._limit:
            # Restart the file with the newest bytes rather than growing forever
            self._fh.seek(0)
            self._fh.truncate()
            data = data[-self._limit :] if self._limit else b""
            self._written = len(data)
        self._fh.write(data)
        self._fh.flush()

    def close(self) -> None:
        if not self._fh.closed:
            self._fh.close()


def open_log_handles(
    stdout_log: LogFile | None,
    stderr_log: LogFile | None,
    limit: int | None,
) -> tuple[LogHandle | None, LogHandle | None]:
    """Open the log targets; stdout and stderr share a handle for the same path."""
    out = LogHandle(stdout_log, limit) if stdout_log is not None else None
    if stderr_log is None:
        return out, None
    if out is not None and stderr_log.path.resolve() == out.path.resolve():
        return out, out
    return out, LogHandle(stderr_log, limit)


# ---------------------------------------------------------------------------
# Debug forwarding
# ---------------------------------------------------------------------------


class DebugForwarder:
    """Writes complete lines to ``sink``, each tagged with ``prefix``.

    A line and its prefix always go out in a single ``write`` so lines from
    concurrent processes never interleave mid-line.
    """

    def __init__(self, sink: TextIO, prefix: str) -> None:
        self._sink = sink
        self._prefix = prefix
        self._pending = bytearray()

    def feed(self, chunk: bytes) -> None:
        self._pending += chunk
        if b"\n" not in chunk:
            return
        *lines, rest = bytes(self._pending).split(b"\n")
        self._pending = bytearray(rest)
        for line in lines:
            self._emit(line)

    def finish(self) -> None:
        # A trailing partial line is completed with a newline in the sink only
        if self._pending:
            self._emit(bytes(self._pending))
            self._pending.clear()

    def _emit(self, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace")
        self._sink.write(f"{self._prefix}{text}\n")
        self._sink.flush()


def make_forwarder(sink: TextIO, prefix: str | None, default: str, color: str) -> DebugForwarder:
    """Build a forwarder; the default prefix is colored only when ``sink`` is a terminal."""
    if prefix is None:
        prefix = colorize(default, color) if _isatty(sink) else default
    return DebugForwarder(sink, prefix)


def _isatty(sink: TextIO) -> bool:
    try:
        return sink.isatty()
    except (AttributeError, ValueError):
        return False


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------


class StreamRecorder:
    """Fans one child stream out to its record, log file and debug sink."""

    def __init__(
        self,
        *,
        record: bool = True,
        record_limit: int | None = None,
        log: LogHandle | None = None,
        forward: DebugForwarder | None = None,
    ) -> None:
        # A zero limit means nothing is ever kept
        self._recording = record and record_limit != 0
        self._limit = record_limit
        self._record = bytearray()
        self._log = log
        self._forward = forward

    def feed(self, chunk: bytes) -> None:
        if self._recording:
            self._record += chunk
            if self._limit is not None and len(self._record) > self._limit:
                del self._record[: len(self._record) - self._limit]
        if self._log is not None:
            self._log.write(chunk)
        if self._forward is not None:
            self._forward.feed(chunk)

    def finish(self) -> None:
        if self._forward is not None:
            self._forward.finish()

    def snapshot(self) -> bytes:
        return bytes(self._record)


async def copy_stream(
    reader: asyncio.StreamReader,
    recorder: StreamRecorder,
    *,
    stream: str,
    chunk_size: int = 8192,
) -> None:
    """Copy ``reader`` into ``recorder`` until EOF.

    EOF is the only terminating condition; anything else the pipe, log file or
    sink raises becomes a StreamCopyError.
    """
    try:
        while True:
            chunk = await reader.read(chunk_size)
            if not chunk:
                break
            recorder.feed(chunk)
        recorder.finish()
    except (OSError, ValueError) as exc:
        raise StreamCopyError(stream, str(exc)) from exc
