"""CommandResult: the captured outcome of one finished (or terminated) process."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from orchard.errors import NonZeroExitError

if TYPE_CHECKING:
    from orchard.command._command import Command

_REPR_STREAM_CHARS = 500


@dataclass
class CommandResult:
    """Exit status plus the raw bytes a process wrote.

    ``status`` is the OS exit code (negative when the process died to a signal
    it was not sent by us) or ``None`` when the orchestrator terminated it
    before it completed.
    """

    command: Command
    status: int | None
    stdout: bytes = b""
    stderr: bytes = b""
    # Label used in messages when the command line itself is noise (containers)
    label: str | None = field(default=None, compare=False)

    renders_streams = True

    @property
    def command_line(self) -> str:
        return self.label or self.command.unified_command()

    def successful(self) -> bool:
        return self.status == 0

    def successful_or_terminated(self) -> bool:
        """True for a clean exit or when we terminated the process ourselves."""
        return self.status is None or self.status == 0

    def assert_success(self, context: str = "") -> None:
        if not self.successful():
            raise NonZeroExitError(self, context)

    # -- text accessors ------------------------------------------------------

    def stdout_text(self) -> str:
        """Lossy decode; invalid UTF-8 becomes U+FFFD."""
        return self.stdout.decode("utf-8", errors="replace")

    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def stdout_as_utf8(self) -> str:
        """Strict decode; raises ``UnicodeDecodeError`` on invalid bytes."""
        return self.stdout.decode("utf-8")

    def stderr_as_utf8(self) -> str:
        return self.stderr.decode("utf-8")

    # -- debug rendering -----------------------------------------------------

    def no_debug(self) -> CommandResultNoDebug:
        return CommandResultNoDebug(
            command=self.command,
            status=self.status,
            stdout=self.stdout,
            stderr=self.stderr,
            label=self.label,
        )

    def with_debug(self) -> CommandResult:
        return CommandResult(
            command=self.command,
            status=self.status,
            stdout=self.stdout,
            stderr=self.stderr,
            label=self.label,
        )

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(command={self.command_line!r}, status={self.status!r}, "
            f"stdout={_clip(self.stdout)!r}, stderr={_clip(self.stderr)!r})"
        )


class CommandResultNoDebug(CommandResult):
    """A CommandResult whose repr and error messages leave out the streams.

    Use it for processes whose output is huge or sensitive; the bytes are still
    available on the attributes.
    """

    renders_streams = False

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(command={self.command_line!r}, status={self.status!r}, "
            f"stdout=<{len(self.stdout)} bytes>, stderr=<{len(self.stderr)} bytes>)"
        )


def _clip(data: bytes) -> str:
    text = data.decode("utf-8", errors="replace")
    if len(text) > _REPR_STREAM_CHARS:
        return text[:_REPR_STREAM_CHARS] + "..."
    return text
