"""Process layer: spawn configuration, running processes and their results.

Split into submodules:
  _command   - Command (what to spawn, how to route its stdio)
  _runner    - ProcessRunner (owns the process handle, waits, terminates)
  _recorder  - record buffers, log files and prefixed debug forwarding
  _result    - CommandResult / CommandResultNoDebug
"""

from orchard.command._command import Command
from orchard.command._recorder import LogFile
from orchard.command._result import CommandResult, CommandResultNoDebug
from orchard.command._runner import ProcessRunner

__all__ = [
    "Command",
    "CommandResult",
    "CommandResultNoDebug",
    "LogFile",
    "ProcessRunner",
]
