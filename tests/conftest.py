"""Shared test fixtures for orchard."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest

from orchard.command import Command, CommandResult
from orchard.errors import AlreadyTerminatedError, CreateFailedError, ProcessTimeoutError
from orchard.runtime import AttachOptions, BuildRequest, ContainerStatus, CreateRequest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures - importable by test files)
# ---------------------------------------------------------------------------


def make_settings(**overrides):
    """Create a Settings object from pure defaults (no orchard.toml, no .env).

    Usage::

        s = make_settings(network=NetworkConfig(health_poll_interval=0.01))
    """
    from orchard.config import (
        CommandConfig,
        ContainerConfig,
        LoggingConfig,
        MessengerConfig,
        NetworkConfig,
        Settings,
    )

    defaults = {
        "command": CommandConfig(),
        "container": ContainerConfig(stop_timeout=0.2),
        "network": NetworkConfig(health_poll_interval=0.01, ip_retry_delay=0.01),
        "messenger": MessengerConfig(connect_delay=0.01),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    return Settings.model_construct(**defaults)


def logical_name(runtime_name: str) -> str:
    """``web_1a2b3c`` -> ``web`` (runtime names carry the network UUID)."""
    return runtime_name.rsplit("_", 1)[0]


# ---------------------------------------------------------------------------
# In-memory container runtime
# ---------------------------------------------------------------------------


@dataclass
class Behaviour:
    """What a fake container does once started.

    ``status`` None keeps it running until stopped (a service).
    """

    status: int | None = 0
    stdout: bytes = b""
    stderr: bytes = b""
    delay: float = 0.0
    health: str | None = None
    ip: str = "10.0.0.2"


class FakeRunner:
    """ContainerRunner stand-in; ``exit`` plays the container's exit."""

    def __init__(self, container_id: str, label: str) -> None:
        self.container_id = container_id
        self.label = label
        self.stdout = bytearray()
        self.stderr = bytearray()
        self.terminated = False
        self._result: CommandResult | None = None
        self._done = asyncio.Event()

    @property
    def finished(self) -> bool:
        return self._result is not None

    def exit(self, status: int | None, stdout: bytes = b"", stderr: bytes = b"") -> None:
        if self.finished:
            return
        self.stdout += stdout
        self.stderr += stderr
        self._result = CommandResult(
            Command("docker", ["start", "--attach", self.container_id]),
            status,
            bytes(self.stdout),
            bytes(self.stderr),
        )
        self._done.set()

    async def wait_to_completion(self) -> CommandResult:
        await self._done.wait()
        assert self._result is not None
        return self._result

    async def wait_with_timeout(self, timeout: float) -> CommandResult:
        try:
            await asyncio.wait_for(self._done.wait(), timeout)
        except TimeoutError:
            raise ProcessTimeoutError(self.label, timeout) from None
        assert self._result is not None
        return self._result

    async def terminate(self, grace: float | None = None) -> CommandResult:
        if self.terminated:
            raise AlreadyTerminatedError(self.label)
        self.terminated = True
        self.exit(None)
        assert self._result is not None
        return self._result

    def get_command_result(self) -> CommandResult | None:
        return self._result

    def stdout_record(self) -> bytes:
        return bytes(self.stdout)

    def stderr_record(self) -> bytes:
        return bytes(self.stderr)


@dataclass
class FakeTransport:
    """RuntimeTransport that keeps containers and networks in dicts.

    Behaviour is keyed by logical container name. ``calls`` records every
    runtime call as ``(action, logical name or network/tag)``.
    """

    name: str = "fake"
    behaviours: dict[str, Behaviour] = field(default_factory=dict)
    failing_builds: set[str] = field(default_factory=set)
    failing_creates: set[str] = field(default_factory=set)
    hanging_stops: set[str] = field(default_factory=set)
    fail_network: bool = False
    calls: list[tuple[str, str]] = field(default_factory=list)
    requests: dict[str, CreateRequest] = field(default_factory=dict)
    runners: dict[str, FakeRunner] = field(default_factory=dict)
    networks: set[str] = field(default_factory=set)
    builds: list[BuildRequest] = field(default_factory=list)

    def behaviour(self, name: str) -> Behaviour:
        return self.behaviours.setdefault(name, Behaviour())

    def runner_for(self, name: str) -> FakeRunner:
        for container_id, runner in self.runners.items():
            if logical_name(self.requests[container_id].name) == name:
                return runner
        raise KeyError(name)

    def actions(self, action: str) -> list[str]:
        return [target for kind, target in self.calls if kind == action]

    async def ping(self) -> None:
        self.calls.append(("ping", ""))

    async def build(self, request: BuildRequest, *, debug=False, log=None) -> CommandResult:
        self.calls.append(("build", request.tag))
        self.builds.append(request)
        failing = any(marker in request.tag for marker in self.failing_builds)
        return CommandResult(
            Command("docker", ["build", "-t", request.tag]),
            1 if failing else 0,
            b"Step 1/2\n",
            b"Error: the build step failed\n" if failing else b"",
        )

    async def create(self, request: CreateRequest, *, log=None) -> str:
        name = logical_name(request.name)
        self.calls.append(("create", name))
        if name in self.failing_creates:
            raise CreateFailedError(request.name, "no such image")
        container_id = f"id-{request.name}"
        self.requests[container_id] = request
        return container_id

    async def start(self, container_id: str, attach: AttachOptions) -> FakeRunner:
        request = self.requests[container_id]
        name = logical_name(request.name)
        self.calls.append(("start", name))
        runner = FakeRunner(container_id, attach.label)
        self.runners[container_id] = runner
        plan = self.behaviour(name)
        if plan.status is not None:
            asyncio.get_running_loop().call_later(
                plan.delay, runner.exit, plan.status, plan.stdout, plan.stderr
            )
        else:
            runner.stdout += plan.stdout
            runner.stderr += plan.stderr
        return runner

    async def stop(self, container_id: str, grace: int) -> None:
        name = logical_name(self.requests[container_id].name)
        self.calls.append(("stop", name))
        if name in self.hanging_stops:
            await asyncio.sleep(3600)
        self.runners[container_id].exit(143)

    async def remove(self, container_id: str) -> None:
        name = logical_name(self.requests[container_id].name)
        self.calls.append(("remove", name))
        runner = self.runners.get(container_id)
        if runner is not None:
            runner.exit(137)

    async def inspect(self, container_id: str) -> ContainerStatus | None:
        request = self.requests.get(container_id)
        runner = self.runners.get(container_id)
        if request is None or runner is None:
            return None
        plan = self.behaviour(logical_name(request.name))
        return ContainerStatus(
            id=container_id,
            running=not runner.finished,
            status="exited" if runner.finished else "running",
            health=plan.health,
            ip_addresses={request.network: plan.ip},
        )

    async def network_create(self, name: str, *, internal: bool, log=None) -> None:
        self.calls.append(("network_create", name))
        if self.fail_network:
            raise CreateFailedError(name, "network create failed")
        self.networks.add(name)

    async def network_remove(self, name: str) -> None:
        self.calls.append(("network_remove", name))
        self.networks.discard(name)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Each test starts from default Settings with short poll intervals."""
    monkeypatch.setattr("orchard.config._settings", make_settings())


@pytest.fixture(autouse=True)
def reset_interrupts():
    from orchard.interrupts import interrupts

    interrupts.reset()
    yield
    interrupts.reset()


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_runtime():
    from orchard.runtime import set_runtime

    runtime = FakeTransport()
    set_runtime(runtime)
    yield runtime
    set_runtime(None)
