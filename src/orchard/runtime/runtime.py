"""Container runtime boundary.

The orchestrator only talks to the runtime through :class:`RuntimeTransport`.
Two transports are built in:

  cli - shells out to the ``docker`` CLI through :class:`orchard.command.Command`
  api - speaks the Docker Engine HTTP API over its Unix socket (aiohttp)

``get_runtime()`` picks one from ``settings.container.runtime``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from orchard.logger import logger

if TYPE_CHECKING:
    from orchard.command import CommandResult, LogFile


@dataclass
class BuildRequest:
    """One image build: ``build -t tag --file dockerfile [build_args] context``."""

    context: Path
    dockerfile: Path
    tag: str
    build_args: list[str] = field(default_factory=list)


@dataclass
class CreateRequest:
    """Everything ``docker create`` needs for one container."""

    name: str
    image: str
    network: str
    hostname: str
    workdir: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    volumes: list[tuple[str, str]] = field(default_factory=list)
    create_args: list[str] = field(default_factory=list)
    command: list[str] = field(default_factory=list)


@dataclass
class ContainerStatus:
    """The subset of ``docker inspect`` the orchestrator looks at."""

    id: str
    running: bool
    status: str
    exit_code: int | None = None
    health: str | None = None  # None when the image has no HEALTHCHECK
    ip_addresses: dict[str, str] = field(default_factory=dict)


def parse_inspect(data: dict[str, Any]) -> ContainerStatus:
    """Build a ContainerStatus from an inspect document (CLI and API share the schema)."""
    state = data.get("State") or {}
    health = (state.get("Health") or {}).get("Status")
    networks = (data.get("NetworkSettings") or {}).get("Networks") or {}
    return ContainerStatus(
        id=data.get("Id", ""),
        running=bool(state.get("Running")),
        status=state.get("Status", ""),
        exit_code=None if state.get("Running") else state.get("ExitCode"),
        health=health,
        ip_addresses={
            name: net["IPAddress"] for name, net in networks.items() if net.get("IPAddress")
        },
    )


@dataclass
class AttachOptions:
    """How a started container's output is captured."""

    label: str
    debug: bool = False
    stdout_log: LogFile | None = None
    stderr_log: LogFile | None = None


@runtime_checkable
class ContainerRunner(Protocol):
    """A started container whose output is being captured until it exits."""

    @property
    def finished(self) -> bool: ...

    async def wait_to_completion(self) -> CommandResult: ...
    async def wait_with_timeout(self, timeout: float) -> CommandResult: ...
    async def terminate(self, grace: float | None = None) -> CommandResult: ...
    def get_command_result(self) -> CommandResult | None: ...
    def stdout_record(self) -> bytes: ...
    def stderr_record(self) -> bytes: ...


@runtime_checkable
class RuntimeTransport(Protocol):
    """Capability interface to the container runtime."""

    name: str

    async def ping(self) -> None: ...
    async def build(
        self, request: BuildRequest, *, debug: bool = False, log: LogFile | None = None
    ) -> CommandResult: ...
    async def create(self, request: CreateRequest, *, log: LogFile | None = None) -> str: ...
    async def start(self, container_id: str, attach: AttachOptions) -> ContainerRunner: ...
    async def stop(self, container_id: str, grace: int) -> None: ...
    async def remove(self, container_id: str) -> None: ...
    async def inspect(self, container_id: str) -> ContainerStatus | None: ...
    async def network_create(
        self, name: str, *, internal: bool, log: LogFile | None = None
    ) -> None: ...
    async def network_remove(self, name: str) -> None: ...


_runtime: RuntimeTransport | None = None


def get_runtime() -> RuntimeTransport:
    """Return the configured transport (cached)."""
    global _runtime
    if _runtime is None:
        from orchard.config import get_settings

        cfg = get_settings().container
        if cfg.runtime == "api":
            from orchard.runtime._api import ApiTransport

            _runtime = ApiTransport(socket_path=cfg.api_socket, api_version=cfg.api_version)
        else:
            from orchard.runtime._cli import CliTransport

            _runtime = CliTransport(cli=cfg.cli)
        logger.info("Container runtime selected", runtime=_runtime.name)
    return _runtime


def set_runtime(runtime: RuntimeTransport | None) -> None:
    """Override (or with None, reset) the cached transport."""
    global _runtime
    _runtime = runtime
