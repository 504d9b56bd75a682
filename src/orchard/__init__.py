"""orchard: build, run and tear down groups of processes and containers from Python."""

from orchard.command import Command, CommandResult, CommandResultNoDebug, LogFile, ProcessRunner
from orchard.container import ContainerSpec, Dockerfile
from orchard.interrupts import ctrlc_issued, reset_ctrlc
from orchard.messenger import MessageKind, NetMessage, NetMessenger, signal_ready
from orchard.network import (
    ContainerNetwork,
    RunOutcome,
    delay_probe,
    health_probe,
    messenger_probe,
    run_container,
)

__all__ = [
    "Command",
    "CommandResult",
    "CommandResultNoDebug",
    "ContainerNetwork",
    "ContainerSpec",
    "Dockerfile",
    "LogFile",
    "MessageKind",
    "NetMessage",
    "NetMessenger",
    "ProcessRunner",
    "RunOutcome",
    "ctrlc_issued",
    "delay_probe",
    "health_probe",
    "messenger_probe",
    "reset_ctrlc",
    "run_container",
    "signal_ready",
]
