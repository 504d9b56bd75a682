"""Docker CLI transport: every runtime call is a ``docker`` subprocess."""

from __future__ import annotations

import json

from orchard.command import Command, CommandResult, LogFile, ProcessRunner
from orchard.errors import (
    CreateFailedError,
    NonZeroExitError,
    RuntimeUnavailableError,
    SpawnError,
)
from orchard.logger import logger
from orchard.runtime.runtime import (
    AttachOptions,
    BuildRequest,
    ContainerStatus,
    CreateRequest,
    parse_inspect,
)

# stderr fragments meaning "nothing to do" for stop/remove
_ALREADY_GONE = (
    "No such container",
    "is not running",
    "not found",
    "No such network",
    "is already in progress",
)


def create_args(request: CreateRequest) -> list[str]:
    """Arguments for ``docker create`` (without the program name)."""
    args = [
        "create",
        "--rm",
        "--network",
        request.network,
        "--hostname",
        request.hostname,
        "--name",
        request.name,
    ]
    if request.workdir:
        args += ["-w", request.workdir]
    for key, value in request.env.items():
        args += ["-e", f"{key}={value}"]
    for host, target in request.volumes:
        args += ["--volume", f"{host}:{target}"]
    args += request.create_args
    args.append(request.image)
    args += request.command
    return args


def build_args(request: BuildRequest) -> list[str]:
    return [
        "build",
        "-t",
        request.tag,
        "--file",
        str(request.dockerfile),
        *request.build_args,
        str(request.context),
    ]


class CliTransport:
    """RuntimeTransport backed by the ``docker`` (or compatible) CLI."""

    name = "cli"

    def __init__(self, cli: str = "docker") -> None:
        self.cli = cli

    def _command(self, *args: str, log: LogFile | None = None) -> Command:
        return Command(self.cli, list(args)).log_to(log)

    async def _run(self, *args: str, log: LogFile | None = None) -> CommandResult:
        try:
            return await self._command(*args, log=log).run_to_completion()
        except SpawnError as exc:
            raise RuntimeUnavailableError(f"`{self.cli}` could not be executed: {exc}") from exc

    # -- probes ----------------------------------------------------------------

    async def ping(self) -> None:
        result = await self._run("version", "--format", "{{.Server.Version}}")
        if not result.successful():
            raise RuntimeUnavailableError(
                f"`{self.cli}` daemon is not reachable: {result.stderr_text().strip()}"
            )

    async def inspect(self, container_id: str) -> ContainerStatus | None:
        result = await self._run("inspect", "--type", "container", container_id)
        if not result.successful():
            # "No such object" / "No such container": gone already
            return None
        docs = json.loads(result.stdout)
        return parse_inspect(docs[0]) if docs else None

    # -- images and containers ------------------------------------------------

    async def build(
        self, request: BuildRequest, *, debug: bool = False, log: LogFile | None = None
    ) -> CommandResult:
        command = self._command(*build_args(request), log=log).enable_debug(debug)
        logger.debug("Building image", tag=request.tag, command=command.unified_command())
        try:
            return await command.run_to_completion()
        except SpawnError as exc:
            raise RuntimeUnavailableError(f"`{self.cli}` could not be executed: {exc}") from exc

    async def create(self, request: CreateRequest, *, log: LogFile | None = None) -> str:
        result = await self._run(*create_args(request), log=log)
        if not result.successful():
            raise CreateFailedError(request.name, result.stderr_text().strip())
        return result.stdout_text().strip()

    async def start(self, container_id: str, attach: AttachOptions) -> ProcessRunner:
        command = Command(
            self.cli,
            ["start", "--attach", container_id],
            debug_label=attach.label,
            stdout_log=attach.stdout_log,
            stderr_log=attach.stderr_log,
        ).enable_debug(attach.debug)
        try:
            return await command.run()
        except SpawnError as exc:
            raise CreateFailedError(attach.label, str(exc)) from exc

    async def stop(self, container_id: str, grace: int) -> None:
        result = await self._run("stop", "-t", str(grace), container_id)
        self._check_teardown(result, "stop")

    async def remove(self, container_id: str) -> None:
        result = await self._run("rm", "-f", container_id)
        self._check_teardown(result, "rm")

    # -- networks --------------------------------------------------------------

    async def network_create(
        self, name: str, *, internal: bool, log: LogFile | None = None
    ) -> None:
        args = ["network", "create"]
        if internal:
            args.append("--internal")
        result = await self._run(*args, name, log=log)
        if not result.successful():
            raise CreateFailedError(name, result.stderr_text().strip())

    async def network_remove(self, name: str) -> None:
        result = await self._run("network", "rm", name)
        self._check_teardown(result, "network rm")

    @staticmethod
    def _check_teardown(result: CommandResult, what: str) -> None:
        if result.successful():
            return
        stderr = result.stderr_text()
        if any(marker in stderr for marker in _ALREADY_GONE):
            logger.debug("Teardown target already gone", action=what)
            return
        raise NonZeroExitError(result, context=f"docker {what}")
