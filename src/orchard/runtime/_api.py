"""Docker Engine API transport over the daemon's Unix socket (aiohttp).

Container output arrives on an ``/attach`` stream opened before the container
is started, so nothing written between start and attach is lost. Without a TTY
the stream is multiplexed: every frame carries an 8-byte header

    [stream type (1 = stdout, 2 = stderr), 0, 0, 0, payload size (u32 big-endian)]

followed by the payload. Frames are fed into the same StreamRecorders the CLI
transport uses, so records, log files and debug prefixes behave identically.
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import json
import struct
import sys
import tarfile
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any
from urllib.parse import quote

import aiohttp

from orchard.command import Command, CommandResult, LogFile
from orchard.command._recorder import (
    LogHandle,
    StreamRecorder,
    make_forwarder,
    next_terminal_color,
    open_log_handles,
)
from orchard.config import get_settings
from orchard.errors import (
    AlreadyTerminatedError,
    CreateFailedError,
    ProcessTimeoutError,
    RuntimeRequestError,
    RuntimeUnavailableError,
)
from orchard.logger import logger
from orchard.runtime.runtime import (
    AttachOptions,
    BuildRequest,
    ContainerStatus,
    CreateRequest,
    parse_inspect,
)

_FRAME_HEADER = struct.Struct(">BxxxI")
_STDERR = 2
_CONTEXT_DOCKERFILE = ".orchard.dockerfile"

# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def split_frames(buf: bytearray) -> list[tuple[int, bytes]]:
    """Consume every complete multiplexed frame at the front of ``buf``.

    Incomplete trailing data is left in ``buf`` for the next read.
    """
    frames: list[tuple[int, bytes]] = []
    offset = 0
    while len(buf) - offset >= _FRAME_HEADER.size:
        stream_type, size = _FRAME_HEADER.unpack_from(buf, offset)
        end = offset + _FRAME_HEADER.size + size
        if end > len(buf):
            break
        frames.append((stream_type, bytes(buf[offset + _FRAME_HEADER.size : end])))
        offset = end
    del buf[:offset]
    return frames


def build_params(request: BuildRequest, dockerfile_in_context: str) -> dict[str, str]:
    """Translate CLI-style build args into ``/build`` query parameters."""
    params: dict[str, str] = {"t": request.tag, "dockerfile": dockerfile_in_context}
    build_args: dict[str, str] = {}
    args = iter(request.build_args)
    for arg in args:
        flag, _, inline = arg.partition("=")
        if flag == "--no-cache":
            params["nocache"] = "1"
        elif flag == "--pull":
            params["pull"] = "1"
        elif flag in ("--build-arg", "--target"):
            value = inline if inline else next(args, "")
            if flag == "--target":
                params["target"] = value
            else:
                key, _, val = value.partition("=")
                build_args[key] = val
        else:
            logger.warning("Build argument not supported by the API transport", arg=arg)
    if build_args:
        params["buildargs"] = json.dumps(build_args)
    return params


def _tar_context(context: Path, dockerfile: Path) -> tuple[bytes, str]:
    """Tar the build context; a Dockerfile outside the context is added to it."""
    context = context.resolve()
    dockerfile = dockerfile.resolve()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        tar.add(str(context), arcname=".")
        if dockerfile.is_relative_to(context):
            name = dockerfile.relative_to(context).as_posix()
        else:
            name = _CONTEXT_DOCKERFILE
            tar.add(str(dockerfile), arcname=name)
    return buf.getvalue(), name


def create_body(request: CreateRequest) -> dict[str, Any]:
    body: dict[str, Any] = {
        "Image": request.image,
        "Hostname": request.hostname,
        "Env": [f"{k}={v}" for k, v in request.env.items()],
        "AttachStdout": True,
        "AttachStderr": True,
        "HostConfig": {
            "AutoRemove": True,
            "NetworkMode": request.network,
            "Binds": [f"{host}:{target}" for host, target in request.volumes],
        },
    }
    if request.workdir:
        body["WorkingDir"] = request.workdir
    if request.command:
        body["Cmd"] = request.command
    return body


async def _message(resp: aiohttp.ClientResponse) -> str:
    text = await resp.text()
    try:
        return json.loads(text).get("message", text)
    except (ValueError, AttributeError):
        return text


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class ApiTransport:
    """RuntimeTransport speaking HTTP to the Docker daemon socket."""

    name = "api"

    def __init__(
        self,
        socket_path: str = "/var/run/docker.sock",
        api_version: str = "v1.43",
    ) -> None:
        self.socket_path = socket_path
        self.base_url = f"http://docker/{api_version}"
        self._session: aiohttp.ClientSession | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        loop = asyncio.get_running_loop()
        if self._session is None or self._session.closed or self._loop is not loop:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.UnixConnector(path=self.socket_path),
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=10),
            )
            self._loop = loop
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    @contextlib.asynccontextmanager
    async def request(
        self, method: str, path: str, **kwargs: Any
    ) -> AsyncIterator[aiohttp.ClientResponse]:
        try:
            session = self._get_session()
            async with session.request(method, self.base_url + path, **kwargs) as resp:
                yield resp
        except aiohttp.ClientConnectionError as exc:
            raise RuntimeUnavailableError(
                f"Docker API at {self.socket_path} is not reachable: {exc}"
            ) from exc

    async def expect_status(
        self, method: str, path: str, *, ok: tuple[int, ...], action: str
    ) -> None:
        async with self.request(method, path) as resp:
            if resp.status not in ok:
                raise RuntimeRequestError(action, resp.status, await _message(resp))

    # -- probes ----------------------------------------------------------------

    async def ping(self) -> None:
        async with self.request("GET", "/_ping") as resp:
            if resp.status != 200:
                raise RuntimeUnavailableError(f"Docker API ping returned HTTP {resp.status}")

    async def inspect(self, container_id: str) -> ContainerStatus | None:
        async with self.request("GET", f"/containers/{quote(container_id)}/json") as resp:
            if resp.status == 404:
                return None
            if resp.status != 200:
                raise RuntimeRequestError("inspect", resp.status, await _message(resp))
            return parse_inspect(await resp.json())

    # -- images ------------------------------------------------------------------

    async def build(
        self, request: BuildRequest, *, debug: bool = False, log: LogFile | None = None
    ) -> CommandResult:
        data, dockerfile_name = await asyncio.to_thread(
            _tar_context, request.context, request.dockerfile
        )
        params = build_params(request, dockerfile_name)
        log_handle, _ = open_log_handles(log, None, get_settings().command.log_limit)
        forward = (
            make_forwarder(sys.stdout, None, f"build {request.tag}  | ", next_terminal_color())
            if debug
            else None
        )
        out = StreamRecorder(log=log_handle, forward=forward)
        errors: list[str] = []
        status = 0
        try:
            async with self.request(
                "POST",
                "/build",
                params=params,
                data=data,
                headers={"Content-Type": "application/x-tar"},
            ) as resp:
                if resp.status != 200:
                    errors.append(await _message(resp))
                    status = 1
                else:
                    async for line in resp.content:
                        if not line.strip():
                            continue
                        event = json.loads(line)
                        if "error" in event:
                            errors.append(event["error"])
                            status = 1
                        elif "stream" in event:
                            out.feed(event["stream"].encode())
            out.finish()
        finally:
            if log_handle is not None:
                log_handle.close()
        stderr = "\n".join(errors).encode()
        return CommandResult(
            command=Command("docker-api", ["build", "-t", request.tag, str(request.context)]),
            status=status,
            stdout=out.snapshot(),
            stderr=stderr,
            label=f"build {request.tag}",
        )

    # -- containers --------------------------------------------------------------

    async def create(self, request: CreateRequest, *, log: LogFile | None = None) -> str:
        if request.create_args:
            logger.warning(
                "create_args are only understood by the CLI transport, ignoring",
                container=request.name,
                create_args=request.create_args,
            )
        async with self.request(
            "POST",
            "/containers/create",
            params={"name": request.name},
            json=create_body(request),
        ) as resp:
            if resp.status != 201:
                raise CreateFailedError(request.name, await _message(resp))
            body = await resp.json()
        for warning in body.get("Warnings") or []:
            logger.warning("Docker create warning", container=request.name, warning=warning)
        return body["Id"]

    async def start(self, container_id: str, attach: AttachOptions) -> ApiContainerRunner:
        runner = ApiContainerRunner(self, container_id, attach)
        await runner.launch()
        return runner

    async def stop(self, container_id: str, grace: int) -> None:
        await self.expect_status(
            "POST",
            f"/containers/{quote(container_id)}/stop?t={grace}",
            ok=(204, 304, 404),
            action="stop",
        )

    async def kill(self, container_id: str) -> None:
        await self.expect_status(
            "POST", f"/containers/{quote(container_id)}/kill", ok=(204, 404, 409), action="kill"
        )

    async def remove(self, container_id: str) -> None:
        await self.expect_status(
            "DELETE",
            f"/containers/{quote(container_id)}?force=1",
            ok=(204, 404, 409),
            action="remove",
        )

    # -- networks ----------------------------------------------------------------

    async def network_create(
        self, name: str, *, internal: bool, log: LogFile | None = None
    ) -> None:
        async with self.request(
            "POST",
            "/networks/create",
            json={"Name": name, "Internal": internal, "CheckDuplicate": True},
        ) as resp:
            if resp.status != 201:
                raise CreateFailedError(name, await _message(resp))

    async def network_remove(self, name: str) -> None:
        await self.expect_status(
            "DELETE", f"/networks/{quote(name)}", ok=(204, 404), action="network remove"
        )


# ---------------------------------------------------------------------------
# Running container
# ---------------------------------------------------------------------------


class ApiContainerRunner:
    """A started container: a wait request plus a demultiplexed attach stream."""

    def __init__(self, transport: ApiTransport, container_id: str, attach: AttachOptions) -> None:
        self.transport = transport
        self.container_id = container_id
        self.label = attach.label
        color = next_terminal_color()
        log_limit = get_settings().command.log_limit
        stdout_log, stderr_log = open_log_handles(attach.stdout_log, attach.stderr_log, log_limit)
        self._log_handles: list[LogHandle] = [
            h for h in {id(h): h for h in (stdout_log, stderr_log) if h}.values()
        ]
        out_forward = err_forward = None
        if attach.debug:
            out_forward = make_forwarder(sys.stdout, None, f"{self.label}  | ", color)
            err_forward = make_forwarder(sys.stderr, None, f"{self.label} E| ", color)
        self._stdout = StreamRecorder(log=stdout_log, forward=out_forward)
        self._stderr = StreamRecorder(log=stderr_log, forward=err_forward)
        self._command = Command("docker-api", ["start", "--attach", container_id])
        self._attached = asyncio.Event()
        self._pump_task: asyncio.Task[None] | None = None
        self._wait_task: asyncio.Task[int] | None = None
        self._result: CommandResult | None = None
        self._finished = False
        self._terminated = False
        self._finalize_lock = asyncio.Lock()

    async def launch(self) -> None:
        cid = quote(self.container_id)
        self._pump_task = asyncio.create_task(self._pump(cid))
        self._wait_task = asyncio.create_task(self._wait_exit(cid))
        # Attach before starting so early output is not lost
        attached = asyncio.ensure_future(self._attached.wait())
        await asyncio.wait([attached, self._pump_task], return_when=asyncio.FIRST_COMPLETED)
        attached.cancel()
        if not self._attached.is_set():
            self._wait_task.cancel()
            exc = None if self._pump_task.cancelled() else self._pump_task.exception()
            raise CreateFailedError(self.label, str(exc or "attach stream closed"))
        try:
            await self.transport.expect_status(
                "POST", f"/containers/{cid}/start", ok=(204, 304), action="start"
            )
        except (RuntimeRequestError, RuntimeUnavailableError) as exc:
            self._pump_task.cancel()
            self._wait_task.cancel()
            raise CreateFailedError(self.label, str(exc)) from exc

    async def _pump(self, cid: str) -> None:
        buf = bytearray()
        try:
            async with self.transport.request(
                "POST",
                f"/containers/{cid}/attach",
                params={"stream": "1", "stdout": "1", "stderr": "1", "logs": "1"},
            ) as resp:
                if resp.status != 200:
                    raise RuntimeRequestError("attach", resp.status, await _message(resp))
                self._attached.set()
                async for chunk in resp.content.iter_any():
                    buf += chunk
                    for stream_type, payload in split_frames(buf):
                        (self._stderr if stream_type == _STDERR else self._stdout).feed(payload)
        finally:
            self._stdout.finish()
            self._stderr.finish()

    async def _wait_exit(self, cid: str) -> int:
        async with self.transport.request(
            "POST", f"/containers/{cid}/wait", params={"condition": "next-exit"}
        ) as resp:
            if resp.status != 200:
                raise RuntimeRequestError("wait", resp.status, await _message(resp))
            body = await resp.json()
        return int(body.get("StatusCode", -1))

    # -- ContainerRunner interface ---------------------------------------------

    @property
    def finished(self) -> bool:
        return self._finished

    def stdout_record(self) -> bytes:
        return self._stdout.snapshot()

    def stderr_record(self) -> bytes:
        return self._stderr.snapshot()

    def get_command_result(self) -> CommandResult | None:
        return self._result

    async def wait_to_completion(self) -> CommandResult:
        if not self._finished:
            assert self._wait_task is not None
            status = await asyncio.shield(self._wait_task)
            await self._finalize(status)
        assert self._result is not None
        return self._result

    async def wait_with_timeout(self, timeout: float) -> CommandResult:
        try:
            return await asyncio.wait_for(self.wait_to_completion(), timeout)
        except TimeoutError:
            raise ProcessTimeoutError(self._command.unified_command(), timeout) from None

    async def terminate(self, grace: float | None = None) -> CommandResult:
        if self._terminated:
            raise AlreadyTerminatedError(f"{self.label}: a termination method was already called")
        self._terminated = True
        if self._finished:
            assert self._result is not None
            return self._result
        settings = get_settings()
        if grace is None:
            grace = settings.command.terminate_grace
        cid = self.container_id
        try:
            await self.transport.stop(cid, int(grace))
        except (RuntimeRequestError, RuntimeUnavailableError) as exc:
            logger.warning("API stop failed, killing", container=self.label, err=str(exc))
            await self.transport.kill(cid)
        assert self._wait_task is not None
        with contextlib.suppress(TimeoutError, RuntimeRequestError, RuntimeUnavailableError):
            await asyncio.wait_for(asyncio.shield(self._wait_task), settings.command.drain_timeout)
        self._wait_task.cancel()
        await self._finalize(None)
        assert self._result is not None
        return self._result

    async def _finalize(self, status: int | None) -> None:
        async with self._finalize_lock:
            if self._finished:
                return
            assert self._pump_task is not None
            drain = get_settings().command.drain_timeout
            done, pending = await asyncio.wait([self._pump_task], timeout=drain)
            for task in pending:
                task.cancel()
                logger.warning("Attach stream did not close, abandoning", container=self.label)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.warning(
                        "Attach stream failed",
                        container=self.label,
                        err=str(task.exception()),
                    )
            for handle in self._log_handles:
                handle.close()
            self._finished = True
            self._result = CommandResult(
                command=self._command,
                status=status,
                stdout=self._stdout.snapshot(),
                stderr=self._stderr.snapshot(),
                label=self.label,
            )
