"""Error taxonomy shared by the process, container, network and messaging layers."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from orchard.command import CommandResult
    from orchard.network import RunOutcome

# Stream excerpts in exception messages are capped so a noisy process cannot
# flood a traceback. The full bytes stay on ``.result``.
_MESSAGE_EXCERPT_CHARS = 2000


class OrchestratorError(Exception):
    """Base error for everything raised by orchard."""

    kind = "error"


# ---------------------------------------------------------------------------
# Process layer
# ---------------------------------------------------------------------------


class SpawnError(OrchestratorError):
    """The executable could not be located or executed."""

    kind = "spawn"

    def __init__(self, command: str, detail: str = "") -> None:
        self.command = command
        self.detail = detail
        msg = f"Failed to spawn `{command}`"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class StreamCopyError(OrchestratorError):
    """Copying a child's stdout/stderr failed with something other than EOF."""

    kind = "io"

    def __init__(self, stream: str, detail: str) -> None:
        self.stream = stream
        self.detail = detail
        super().__init__(f"Copying {stream} failed: {detail}")


class NonZeroExitError(OrchestratorError):
    """A process (or container) did not exit cleanly."""

    kind = "non-zero exit"

    def __init__(self, result: CommandResult, context: str = "") -> None:
        self.result = result
        self.context = context
        if result.status is None:
            msg = f"`{result.command_line}` was terminated before completion"
        else:
            msg = f"`{result.command_line}` exited with status {result.status}"
        if context:
            msg = f"{context}: {msg}"
        if result.renders_streams:
            stream = result.stderr or result.stdout
            if stream:
                text = stream.decode(errors="replace")
                if len(text) > _MESSAGE_EXCERPT_CHARS:
                    text = "..." + text[-_MESSAGE_EXCERPT_CHARS:]
                msg += f"\n{text}"
        super().__init__(msg)


class AlreadyTerminatedError(OrchestratorError):
    """A termination method already released the process handle."""

    kind = "already terminated"


class UnsupportedError(OrchestratorError):
    """The operation is not available on this platform or transport."""

    kind = "unsupported"


class ProcessTimeoutError(OrchestratorError, TimeoutError):
    """A process did not finish within the requested wait."""

    kind = "timeout"

    def __init__(self, command: str, timeout: float) -> None:
        self.command = command
        self.timeout = timeout
        super().__init__(f"`{command}` did not complete within {timeout}s")


# ---------------------------------------------------------------------------
# Container layer
# ---------------------------------------------------------------------------


class SpecError(OrchestratorError):
    """A container or network description is invalid."""

    kind = "spec"


class RuntimeUnavailableError(OrchestratorError):
    """The container runtime could not be reached."""

    kind = "runtime unavailable"


class RuntimeRequestError(OrchestratorError):
    """The runtime API rejected a request."""

    kind = "runtime request"

    def __init__(self, action: str, status: int, message: str = "") -> None:
        self.action = action
        self.status = status
        self.message = message
        msg = f"{action} failed with HTTP {status}"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class BuildFailedError(OrchestratorError):
    """An image build exited unsuccessfully."""

    kind = "build"

    def __init__(self, name: str, log: str, detail: str = "") -> None:
        self.name = name
        self.log = log
        self.detail = detail
        msg = f"Build failed for {name}"
        if detail:
            msg += f" ({detail})"
        if log:
            msg += f":\n{log}"
        super().__init__(msg)


class CreateFailedError(OrchestratorError):
    """Creating or starting a container (or the network) failed."""

    kind = "create"

    def __init__(self, name: str, detail: str = "") -> None:
        self.name = name
        self.detail = detail
        super().__init__(f"Create failed for {name}" + (f": {detail}" if detail else ""))


# ---------------------------------------------------------------------------
# Network layer
# ---------------------------------------------------------------------------


class _ContainerOutcomeError(OrchestratorError):
    """Per-container outcome that may carry the partial captured result."""

    def __init__(
        self,
        name: str,
        detail: str = "",
        result: CommandResult | None = None,
    ) -> None:
        self.name = name
        self.detail = detail
        self.result = result
        super().__init__(f"Container {name!r} {self.kind}" + (f": {detail}" if detail else ""))


class SkippedError(_ContainerOutcomeError):
    """The container was never started (earlier build or dependency failure)."""

    kind = "skipped"


class StoppedError(_ContainerOutcomeError):
    """The container was stopped because another container failed."""

    kind = "stopped"


class ReadinessError(_ContainerOutcomeError):
    """A readiness probe failed or the container exited before becoming ready."""

    kind = "readiness"


class HealthCheckError(_ContainerOutcomeError):
    """The runtime reported the container as unhealthy."""

    kind = "unhealthy"


class RunTimeoutError(_ContainerOutcomeError):
    """The run's wall-clock timeout elapsed while the container was running."""

    kind = "timeout"


class RunCancelledError(_ContainerOutcomeError):
    """An interrupt (or explicit terminate) cancelled the run."""

    kind = "cancelled"


class RunFailedError(OrchestratorError):
    """Aggregate failure of a ContainerNetwork run."""

    kind = "run failed"

    def __init__(self, outcome: RunOutcome, report: str) -> None:
        self.outcome = outcome
        self.report = report
        super().__init__(report)


# ---------------------------------------------------------------------------
# Messaging layer
# ---------------------------------------------------------------------------


class MessengerConnectionError(OrchestratorError):
    """The message stream could not be opened or written."""

    kind = "connection"


class ConnectionClosedError(MessengerConnectionError):
    """The peer shut down the stream (possibly mid-frame)."""

    kind = "connection closed"


class MalformedFrameError(OrchestratorError):
    """A frame's declared length or envelope is invalid."""

    kind = "malformed frame"


class UnknownMessageTypeError(MalformedFrameError):
    """The envelope names a message kind or version this side does not know."""

    kind = "unknown message type"


class MessengerTimeoutError(OrchestratorError, TimeoutError):
    """No peer connected before the listen timeout."""

    kind = "timeout"
