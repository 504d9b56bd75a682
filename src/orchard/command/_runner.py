"""ProcessRunner: one spawned OS process, its output capture and its termination.

The runner is the single owner of the asyncio process handle. Copier tasks
drain stdout and stderr concurrently with the wait-for-exit call; the result is
produced once, by whichever of wait / terminate gets there first.

Termination:
  - ``terminate()`` sends SIGTERM, escalates to SIGKILL after the grace period,
    releases the handle and records a result with ``status=None``. A second
    call raises AlreadyTerminatedError.
  - ``start_terminate()`` only fires SIGKILL and returns.
  - A runner garbage collected while its process still runs kills it and
    records a partial result (``kill_on_drop``).
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import sys
from typing import IO, TYPE_CHECKING, Any

from orchard.command._recorder import (
    LogHandle,
    StreamRecorder,
    copy_stream,
    make_forwarder,
    next_terminal_color,
    open_log_handles,
)
from orchard.command._result import CommandResult
from orchard.config import get_settings
from orchard.errors import (
    AlreadyTerminatedError,
    ProcessTimeoutError,
    SpawnError,
    StreamCopyError,
    UnsupportedError,
)
from orchard.logger import logger

if TYPE_CHECKING:
    from orchard.command._command import Command

StdinSource = int | IO[Any] | None


class ProcessRunner:
    """Handle to a running (or finished) child process."""

    def __init__(
        self,
        command: Command,
        proc: asyncio.subprocess.Process,
        stdout: StreamRecorder,
        stderr: StreamRecorder,
        copiers: list[asyncio.Task[None]],
        log_handles: list[LogHandle],
    ) -> None:
        self.command = command
        self._proc: asyncio.subprocess.Process | None = proc
        self._pid = proc.pid
        self._stdout = stdout
        self._stderr = stderr
        self._copiers = copiers
        self._log_handles = log_handles
        self._result: CommandResult | None = None
        # Kept after take_command_result() so a later terminate() can still report it
        self._final_result: CommandResult | None = None
        self._finished = False
        self._terminated = False
        self._finalize_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    @classmethod
    async def spawn(
        cls, command: Command, stdin: StdinSource = asyncio.subprocess.DEVNULL
    ) -> ProcessRunner:
        """Spawn ``command``; raises SpawnError if it cannot be executed."""
        settings = get_settings().command
        record_limit = command.record_limit
        if record_limit is None:
            record_limit = settings.record_limit
        log_limit = settings.log_limit if command.log_limit is None else command.log_limit

        env: dict[str, str] | None = None
        if command.env_clear:
            env = dict(command.env)
        elif command.env:
            env = {**os.environ, **command.env}

        try:
            stdout_log, stderr_log = open_log_handles(
                command.stdout_log, command.stderr_log, log_limit
            )
        except OSError as exc:
            raise SpawnError(command.unified_command(), f"cannot open log file: {exc}") from exc
        log_handles = [h for h in {id(h): h for h in (stdout_log, stderr_log) if h}.values()]

        pipe_stdout = command.stdout_recording or command.stdout_debug or stdout_log is not None
        pipe_stderr = command.stderr_recording or command.stderr_debug or stderr_log is not None
        try:
            proc = await asyncio.create_subprocess_exec(
                command.program,
                *command.args,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE if pipe_stdout else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE if pipe_stderr else asyncio.subprocess.DEVNULL,
                cwd=command.cwd,
                env=env,
            )
        except (OSError, ValueError) as exc:
            for handle in log_handles:
                handle.close()
            raise SpawnError(command.unified_command(), str(exc)) from exc

        color = next_terminal_color()
        label = command.debug_label or f"{os.path.basename(command.program)} {proc.pid}"
        out_forward = err_forward = None
        if command.stdout_debug:
            out_forward = make_forwarder(
                sys.stdout, command.stdout_debug_line_prefix, f"{label}  | ", color
            )
        if command.stderr_debug:
            err_forward = make_forwarder(
                sys.stderr, command.stderr_debug_line_prefix, f"{label} E| ", color
            )
        stdout = StreamRecorder(
            record=command.stdout_recording,
            record_limit=record_limit,
            log=stdout_log,
            forward=out_forward,
        )
        stderr = StreamRecorder(
            record=command.stderr_recording,
            record_limit=record_limit,
            log=stderr_log,
            forward=err_forward,
        )

        chunk = settings.read_chunk_size
        copiers: list[asyncio.Task[None]] = []
        if pipe_stdout:
            assert proc.stdout is not None
            copiers.append(
                asyncio.create_task(
                    copy_stream(proc.stdout, stdout, stream="stdout", chunk_size=chunk)
                )
            )
        if pipe_stderr:
            assert proc.stderr is not None
            copiers.append(
                asyncio.create_task(
                    copy_stream(proc.stderr, stderr, stream="stderr", chunk_size=chunk)
                )
            )

        logger.debug("Spawned process", command=command.unified_command(), pid=proc.pid)
        return cls(command, proc, stdout, stderr, copiers, log_handles)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def pid(self) -> int | None:
        """PID of the child, or None once the handle has been released."""
        return self._pid if self._proc is not None else None

    @property
    def finished(self) -> bool:
        return self._finished

    def stdout_record(self) -> bytes:
        """Snapshot of captured stdout (usable while the process still runs)."""
        return self._stdout.snapshot()

    def stderr_record(self) -> bytes:
        return self._stderr.snapshot()

    def get_command_result(self) -> CommandResult | None:
        return self._result

    def take_command_result(self) -> CommandResult | None:
        result, self._result = self._result, None
        return result

    async def write_stdin(self, data: bytes) -> None:
        """Write ``data`` to a piped stdin, then close it."""
        proc = self._require_proc()
        if proc.stdin is None:
            raise UnsupportedError("stdin was not spawned as a pipe")
        try:
            proc.stdin.write(data)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # The child exited or closed stdin without reading everything
            logger.debug("Child closed stdin early", command=self.command.unified_command())
        finally:
            proc.stdin.close()

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    async def wait_to_completion(self) -> CommandResult:
        """Wait for exit and for both copiers to reach EOF."""
        if self._finished:
            return self._existing_result()
        proc = self._require_proc()
        status = await proc.wait()
        await self._finalize(status)
        return self._existing_result()

    async def wait_with_timeout(self, timeout: float) -> CommandResult:
        """Like wait_to_completion, but raise ProcessTimeoutError after ``timeout`` seconds.

        The process keeps running after a timeout and the runner stays usable.
        """
        if self._finished:
            return self._existing_result()
        proc = self._require_proc()
        try:
            status = await asyncio.wait_for(proc.wait(), timeout)
        except TimeoutError:
            raise ProcessTimeoutError(self.command.unified_command(), timeout) from None
        await self._finalize(status)
        return self._existing_result()

    # ------------------------------------------------------------------
    # Signals and termination
    # ------------------------------------------------------------------

    def send_signal(self, sig: int) -> None:
        """Deliver ``sig`` to the child. A child that already exited is not an error."""
        if os.name != "posix":
            raise UnsupportedError("Sending signals is only supported on POSIX")
        if self._terminated or self._proc is None:
            raise AlreadyTerminatedError(
                f"`{self.command.unified_command()}`: a termination method was already called"
            )
        with contextlib.suppress(ProcessLookupError):
            self._proc.send_signal(sig)

    def send_sigterm(self) -> None:
        self.send_signal(signal.SIGTERM)

    def start_terminate(self) -> None:
        """Fire SIGKILL without waiting for it to take effect."""
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.kill()

    async def terminate(self, grace: float | None = None) -> CommandResult:
        """Stop the process (SIGTERM, then SIGKILL after ``grace``) and release the handle."""
        if self._terminated:
            raise AlreadyTerminatedError(
                f"`{self.command.unified_command()}`: a termination method was already called"
            )
        self._terminated = True
        if self._finished:
            # Exited by itself and was already collected
            assert self._final_result is not None
            return self._final_result

        settings = get_settings().command
        grace = settings.terminate_grace if grace is None else grace
        proc = self._require_proc()
        signalled = proc.returncode is None
        if signalled:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), grace)
            except TimeoutError:
                logger.warning(
                    "Process ignored SIGTERM, killing",
                    command=self.command.unified_command(),
                    pid=self._pid,
                )
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
        status = await proc.wait()
        await self._finalize(None if signalled else status, drain_timeout=settings.drain_timeout)
        return self._existing_result()

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def _finalize(self, status: int | None, drain_timeout: float | None = None) -> None:
        async with self._finalize_lock:
            if self._finished:
                return
            errors: list[BaseException] = []
            if self._copiers:
                done, pending = await asyncio.wait(self._copiers, timeout=drain_timeout)
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
                    logger.warning(
                        "Output copiers did not reach EOF, abandoning",
                        command=self.command.unified_command(),
                    )
                errors = [t.exception() for t in done if not t.cancelled() and t.exception()]
            for handle in self._log_handles:
                handle.close()
            self._proc = None
            self._finished = True
            self._result = self._final_result = CommandResult(
                command=self.command,
                status=status,
                stdout=self._stdout.snapshot(),
                stderr=self._stderr.snapshot(),
            )
        if errors:
            err = errors[0]
            if isinstance(err, StreamCopyError):
                raise err
            raise StreamCopyError("output", str(err)) from err

    def _require_proc(self) -> asyncio.subprocess.Process:
        if self._proc is None:
            raise AlreadyTerminatedError(
                f"`{self.command.unified_command()}`: the process handle was already released"
            )
        return self._proc

    def _existing_result(self) -> CommandResult:
        if self._result is None:
            raise AlreadyTerminatedError(
                f"`{self.command.unified_command()}`: the result was already taken"
            )
        return self._result

    # ------------------------------------------------------------------
    # Context manager / drop
    # ------------------------------------------------------------------

    async def __aenter__(self) -> ProcessRunner:
        return self

    async def __aexit__(self, *exc: object) -> None:
        if not self._finished and not self._terminated:
            await self.terminate()

    def __del__(self) -> None:
        proc = getattr(self, "_proc", None)
        if proc is None or getattr(self, "_finished", True) or not self.command.kill_on_drop:
            return
        # Never raise from a finalizer; the loop may already be closed
        with contextlib.suppress(Exception):
            if proc.returncode is None:
                proc.kill()
            for task in self._copiers:
                task.cancel()
            for handle in self._log_handles:
                handle.close()
            self._finished = True
            self._proc = None
            self._result = CommandResult(
                command=self.command,
                status=None,
                stdout=self._stdout.snapshot(),
                stderr=self._stderr.snapshot(),
            )
            logger.warning(
                "ProcessRunner dropped while its process was running, killed it",
                command=self.command.unified_command(),
                pid=self._pid,
            )
