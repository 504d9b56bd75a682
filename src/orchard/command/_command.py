"""Command: a reusable description of a process to spawn."""

from __future__ import annotations

import asyncio
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from orchard.command._recorder import LogFile
from orchard.command._result import CommandResult
from orchard.command._runner import ProcessRunner, StdinSource


@dataclass
class Command:
    """Program, arguments, environment and stdio routing for a child process.

    By default both streams are recorded (kept in memory, returned on the
    CommandResult) and nothing is forwarded or logged. Set ``stdout_debug`` /
    ``stderr_debug`` to echo prefixed lines to our own stdout/stderr.

    A Command can be run any number of times; the run-to-completion helpers
    keep the most recent result until ``take_result()``.
    """

    program: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    env_clear: bool = False
    cwd: Path | None = None
    stdout_recording: bool = True
    stderr_recording: bool = True
    stdout_debug: bool = False
    stderr_debug: bool = False
    stdout_debug_line_prefix: str | None = None
    stderr_debug_line_prefix: str | None = None
    # Replaces "{program} {pid}" in the default debug prefixes
    debug_label: str | None = None
    stdout_log: LogFile | None = None
    stderr_log: LogFile | None = None
    record_limit: int | None = None
    log_limit: int | None = None
    kill_on_drop: bool = True
    _last_result: CommandResult | None = field(default=None, init=False, repr=False, compare=False)

    @classmethod
    def parse(cls, line: str) -> Command:
        """``Command.parse("docker start --attach")``: split on whitespace."""
        program, *args = line.split()
        return cls(program, args)

    # -- builders (chainable) ---------------------------------------------

    def add_args(self, *args: str | Path) -> Command:
        self.args.extend(str(a) for a in args)
        return self

    def set_env(self, key: str, value: str) -> Command:
        self.env[key] = value
        return self

    def enable_debug(self, enabled: bool = True) -> Command:
        self.stdout_debug = enabled
        self.stderr_debug = enabled
        return self

    def set_recording(self, enabled: bool) -> Command:
        self.stdout_recording = enabled
        self.stderr_recording = enabled
        return self

    def log_to(self, log_file: LogFile | None) -> Command:
        """Log both streams to the same file."""
        self.stdout_log = log_file
        self.stderr_log = log_file
        return self

    def set_limit(self, limit: int | None) -> Command:
        """Set both ``record_limit`` and ``log_limit``."""
        self.record_limit = limit
        self.log_limit = limit
        return self

    def unified_command(self) -> str:
        return shlex.join([self.program, *self.args])

    # -- running -------------------------------------------------------------

    async def run(self) -> ProcessRunner:
        """Spawn with stdin from /dev/null."""
        return await ProcessRunner.spawn(self)

    async def run_with_stdin(self, stdin: StdinSource) -> ProcessRunner:
        """Spawn with an explicit stdin (``asyncio.subprocess.PIPE``, an fd or a file)."""
        return await ProcessRunner.spawn(self, stdin)

    async def run_to_completion(self) -> CommandResult:
        runner = await self.run()
        result = await runner.wait_to_completion()
        self._last_result = result
        return result

    async def run_with_input_to_completion(self, data: bytes) -> CommandResult:
        """Write ``data`` to the child's stdin, close it, and wait for exit."""
        runner = await ProcessRunner.spawn(self, asyncio.subprocess.PIPE)
        await runner.write_stdin(data)
        result = await runner.wait_to_completion()
        self._last_result = result
        return result

    def take_result(self) -> CommandResult | None:
        result, self._last_result = self._last_result, None
        return result
