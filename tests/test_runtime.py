"""Tests for the runtime transports: CLI argument building, a fake docker CLI,
and the Engine API transport against an in-process aiohttp server on a Unix socket.
"""

from __future__ import annotations

import asyncio
import json
import shutil
import stat
import struct
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio
from aiohttp import web
from conftest import make_settings

from orchard.config import ContainerConfig
from orchard.errors import (
    CreateFailedError,
    NonZeroExitError,
    RuntimeRequestError,
    RuntimeUnavailableError,
)
from orchard.runtime import (
    ApiTransport,
    AttachOptions,
    BuildRequest,
    CliTransport,
    CreateRequest,
    get_runtime,
    parse_inspect,
    set_runtime,
)
from orchard.runtime._api import build_params, create_body, split_frames
from orchard.runtime._cli import build_args, create_args


def _request(**overrides) -> CreateRequest:
    fields = {
        "name": "web_abc123",
        "image": "alpine:3",
        "network": "net_abc123",
        "hostname": "web_abc123",
    }
    fields.update(overrides)
    return CreateRequest(**fields)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestCliArgs:
    def test_create_args_order(self):
        req = _request(
            workdir="/work",
            env={"A": "1"},
            volumes=[("/host/data", "/data")],
            create_args=["--cap-add", "NET_ADMIN"],
            command=["/entry", "--flag"],
        )
        assert create_args(req) == [
            "create",
            "--rm",
            "--network",
            "net_abc123",
            "--hostname",
            "web_abc123",
            "--name",
            "web_abc123",
            "-w",
            "/work",
            "-e",
            "A=1",
            "--volume",
            "/host/data:/data",
            "--cap-add",
            "NET_ADMIN",
            "alpine:3",
            "/entry",
            "--flag",
        ]

    def test_minimal_create_args_end_with_image(self):
        assert create_args(_request())[-1] == "alpine:3"

    def test_build_args(self):
        req = BuildRequest(
            context=Path("/ctx"),
            dockerfile=Path("/ctx/app.dockerfile"),
            tag="orchard-app:1",
            build_args=["--no-cache"],
        )
        assert build_args(req) == [
            "build",
            "-t",
            "orchard-app:1",
            "--file",
            "/ctx/app.dockerfile",
            "--no-cache",
            "/ctx",
        ]


class TestApiHelpers:
    def test_split_frames_keeps_partial_tail(self):
        buf = bytearray(
            struct.pack(">BxxxI", 1, 3) + b"out" + struct.pack(">BxxxI", 2, 4) + b"er"
        )
        assert split_frames(buf) == [(1, b"out")]
        buf += b"r!"
        assert split_frames(buf) == [(2, b"err!")]
        assert buf == bytearray()

    def test_build_params(self):
        req = BuildRequest(
            context=Path("/ctx"),
            dockerfile=Path("/ctx/Dockerfile"),
            tag="t:1",
            build_args=["--build-arg", "A=1", "--build-arg=B=2", "--target", "dev", "--pull"],
        )
        params = build_params(req, "Dockerfile")
        assert params["t"] == "t:1"
        assert params["target"] == "dev"
        assert params["pull"] == "1"
        assert json.loads(params["buildargs"]) == {"A": "1", "B": "2"}

    def test_create_body(self):
        body = create_body(_request(workdir="/w", env={"K": "V"}, command=["run"]))
        assert body["Image"] == "alpine:3"
        assert body["Env"] == ["K=V"]
        assert body["Cmd"] == ["run"]
        assert body["WorkingDir"] == "/w"
        assert body["HostConfig"]["AutoRemove"] is True
        assert body["HostConfig"]["NetworkMode"] == "net_abc123"

    def test_parse_inspect(self):
        status = parse_inspect(
            {
                "Id": "abc",
                "State": {"Running": True, "Status": "running", "Health": {"Status": "healthy"}},
                "NetworkSettings": {
                    "Networks": {"net_1": {"IPAddress": "172.18.0.2"}, "none": {"IPAddress": ""}}
                },
            }
        )
        assert status.running
        assert status.health == "healthy"
        assert status.exit_code is None
        assert status.ip_addresses == {"net_1": "172.18.0.2"}


class TestRuntimeSelection:
    def test_default_is_cli(self):
        set_runtime(None)
        try:
            assert isinstance(get_runtime(), CliTransport)
        finally:
            set_runtime(None)

    def test_api_from_settings(self, monkeypatch):
        monkeypatch.setattr(
            "orchard.config._settings",
            make_settings(container=ContainerConfig(runtime="api", api_socket="/tmp/x.sock")),
        )
        set_runtime(None)
        try:
            runtime = get_runtime()
            assert isinstance(runtime, ApiTransport)
            assert runtime.socket_path == "/tmp/x.sock"
        finally:
            set_runtime(None)


# ---------------------------------------------------------------------------
# CLI transport against a scripted fake ``docker``
# ---------------------------------------------------------------------------

_FAKE_DOCKER = """#!/bin/sh
echo "$@" >> "{log}"
case "$1" in
  create) echo "  cid-123  " ;;
  start) echo "container says hi"; echo "Error: oh no" >&2; exit 7 ;;
  stop) echo "Error response from daemon: No such container: $4" >&2; exit 1 ;;
  rm) echo "Error response from daemon: permission denied" >&2; exit 1 ;;
  network) exit 0 ;;
  inspect) echo "Error: No such object" >&2; exit 1 ;;
  *) exit 0 ;;
esac
"""


@pytest.fixture
def fake_docker(tmp_path):
    log = tmp_path / "calls.log"
    script = tmp_path / "docker"
    script.write_text(_FAKE_DOCKER.format(log=log))
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return CliTransport(cli=str(script)), log


class TestCliTransport:
    @pytest.mark.asyncio
    async def test_create_returns_trimmed_id(self, fake_docker):
        cli, log = fake_docker
        assert await cli.create(_request()) == "cid-123"
        assert log.read_text().startswith("create --rm --network net_abc123")

    @pytest.mark.asyncio
    async def test_start_attaches_and_captures(self, fake_docker):
        cli, _ = fake_docker
        runner = await cli.start("cid-123", AttachOptions(label="web"))
        result = await runner.wait_to_completion()
        assert result.status == 7
        assert result.stdout == b"container says hi\n"
        assert b"Error: oh no" in result.stderr

    @pytest.mark.asyncio
    async def test_stop_of_missing_container_is_tolerated(self, fake_docker):
        cli, log = fake_docker
        await cli.stop("gone", 3)
        assert "stop -t 3 gone" in log.read_text()

    @pytest.mark.asyncio
    async def test_other_remove_failures_raise(self, fake_docker):
        cli, _ = fake_docker
        with pytest.raises(NonZeroExitError, match="permission denied"):
            await cli.remove("cid-123")

    @pytest.mark.asyncio
    async def test_inspect_of_missing_container_is_none(self, fake_docker):
        cli, _ = fake_docker
        assert await cli.inspect("gone") is None

    @pytest.mark.asyncio
    async def test_network_create_internal(self, fake_docker):
        cli, log = fake_docker
        await cli.network_create("net_1", internal=True)
        assert "network create --internal net_1" in log.read_text()

    @pytest.mark.asyncio
    async def test_missing_cli_is_runtime_unavailable(self):
        cli = CliTransport(cli="/nonexistent/docker")
        with pytest.raises(RuntimeUnavailableError):
            await cli.ping()


# ---------------------------------------------------------------------------
# API transport against an in-process daemon
# ---------------------------------------------------------------------------


class FakeDockerApi:
    """Just enough of the Engine API for one container's life."""

    def __init__(self) -> None:
        self.created: list[tuple[str, dict]] = []
        self.networks: list[dict] = []
        self.removed: list[str] = []
        self.frames = [(1, b"hello\n"), (2, b"Error: bad\n")]
        self.exit_code = 3
        self.started = asyncio.Event()

    def app(self) -> web.Application:
        app = web.Application()
        r = app.router
        r.add_get("/v1.43/_ping", self.ping)
        r.add_post("/v1.43/containers/create", self.create)
        r.add_get("/v1.43/containers/{id}/json", self.inspect)
        r.add_post("/v1.43/containers/{id}/attach", self.attach)
        r.add_post("/v1.43/containers/{id}/wait", self.wait)
        r.add_post("/v1.43/containers/{id}/start", self.start)
        r.add_delete("/v1.43/containers/{id}", self.remove)
        r.add_post("/v1.43/networks/create", self.network_create)
        r.add_delete("/v1.43/networks/{name}", self.network_remove)
        r.add_post("/v1.43/build", self.build)
        return app

    async def ping(self, request: web.Request) -> web.Response:
        return web.Response(text="OK")

    async def create(self, request: web.Request) -> web.Response:
        body = await request.json()
        if body["Image"] == "missing:latest":
            return web.json_response({"message": "No such image: missing:latest"}, status=404)
        self.created.append((request.query["name"], body))
        return web.json_response({"Id": "c0ffee", "Warnings": []}, status=201)

    async def inspect(self, request: web.Request) -> web.Response:
        if request.match_info["id"] != "c0ffee":
            return web.json_response({"message": "No such container"}, status=404)
        return web.json_response(
            {
                "Id": "c0ffee",
                "State": {"Running": not self.started.is_set(), "Status": "running"},
                "NetworkSettings": {"Networks": {"net_1": {"IPAddress": "10.1.0.5"}}},
            }
        )

    async def attach(self, request: web.Request) -> web.StreamResponse:
        resp = web.StreamResponse()
        await resp.prepare(request)
        await self.started.wait()
        for stream, payload in self.frames:
            await resp.write(struct.pack(">BxxxI", stream, len(payload)) + payload)
        await resp.write_eof()
        return resp

    async def wait(self, request: web.Request) -> web.Response:
        await self.started.wait()
        return web.json_response({"StatusCode": self.exit_code})

    async def start(self, request: web.Request) -> web.Response:
        self.started.set()
        return web.Response(status=204)

    async def remove(self, request: web.Request) -> web.Response:
        self.removed.append(request.match_info["id"])
        return web.Response(status=404)

    async def network_create(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.networks.append(body)
        return web.json_response({"Id": "n1"}, status=201)

    async def network_remove(self, request: web.Request) -> web.Response:
        return web.json_response({"message": "network in use"}, status=403)

    async def build(self, request: web.Request) -> web.StreamResponse:
        await request.read()
        resp = web.StreamResponse()
        await resp.prepare(request)
        await resp.write(json.dumps({"stream": "Step 1/1 : FROM alpine\n"}).encode() + b"\n")
        await resp.write(json.dumps({"error": "The command returned 1"}).encode() + b"\n")
        await resp.write_eof()
        return resp


@pytest_asyncio.fixture
async def docker_api():
    # Unix socket paths are short-limited; keep it out of pytest's deep tmp dirs
    sock_dir = tempfile.mkdtemp(prefix="orchard-")
    sock = str(Path(sock_dir) / "docker.sock")
    api = FakeDockerApi()
    runner = web.AppRunner(api.app())
    await runner.setup()
    await web.UnixSite(runner, sock).start()
    transport = ApiTransport(socket_path=sock)
    yield api, transport
    await transport.close()
    await runner.cleanup()
    shutil.rmtree(sock_dir, ignore_errors=True)


class TestApiTransport:
    @pytest.mark.asyncio
    async def test_ping(self, docker_api):
        _, transport = docker_api
        await transport.ping()

    @pytest.mark.asyncio
    async def test_unreachable_socket(self):
        transport = ApiTransport(socket_path="/nonexistent/docker.sock")
        try:
            with pytest.raises(RuntimeUnavailableError):
                await transport.ping()
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_create_and_attached_run(self, docker_api):
        api, transport = docker_api
        cid = await transport.create(_request(env={"A": "1"}))
        assert cid == "c0ffee"
        assert api.created[0][0] == "web_abc123"
        assert api.created[0][1]["Env"] == ["A=1"]

        runner = await transport.start(cid, AttachOptions(label="web"))
        result = await asyncio.wait_for(runner.wait_to_completion(), 10)
        assert result.status == 3
        assert result.stdout == b"hello\n"
        assert result.stderr == b"Error: bad\n"
        assert runner.finished

    @pytest.mark.asyncio
    async def test_create_failure(self, docker_api):
        _, transport = docker_api
        with pytest.raises(CreateFailedError, match="No such image"):
            await transport.create(_request(image="missing:latest"))

    @pytest.mark.asyncio
    async def test_inspect(self, docker_api):
        _, transport = docker_api
        status = await transport.inspect("c0ffee")
        assert status.ip_addresses == {"net_1": "10.1.0.5"}
        assert await transport.inspect("other") is None

    @pytest.mark.asyncio
    async def test_remove_of_missing_container_is_tolerated(self, docker_api):
        api, transport = docker_api
        await transport.remove("c0ffee")
        assert api.removed == ["c0ffee"]

    @pytest.mark.asyncio
    async def test_network_lifecycle(self, docker_api):
        api, transport = docker_api
        await transport.network_create("net_1", internal=True)
        assert api.networks == [{"Name": "net_1", "Internal": True, "CheckDuplicate": True}]
        with pytest.raises(RuntimeRequestError) as exc_info:
            await transport.network_remove("net_1")
        assert exc_info.value.status == 403
        assert "network in use" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_build_error_event_fails_the_result(self, docker_api, tmp_path):
        _, transport = docker_api
        (tmp_path / "Dockerfile").write_text("FROM alpine\n")
        result = await transport.build(
            BuildRequest(context=tmp_path, dockerfile=tmp_path / "Dockerfile", tag="t:1")
        )
        assert result.status == 1
        assert b"Step 1/1" in result.stdout
        assert b"The command returned 1" in result.stderr
