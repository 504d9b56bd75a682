"""Tests for Dockerfile / ContainerSpec and the Container build-create-start path."""

from __future__ import annotations

import pytest
from conftest import FakeTransport

from orchard.container import Container, ContainerSpec, Dockerfile, build_image, safe_name
from orchard.errors import BuildFailedError, CreateFailedError, SpecError


def _container(spec: ContainerSpec, runtime: FakeTransport) -> Container:
    return Container(spec, uuid="u1", network_name="net_u1", runtime=runtime)


class TestDockerfile:
    def test_name_tag_needs_no_build(self):
        df = Dockerfile.name_tag("alpine:3")
        assert not df.needs_build
        assert not df.needs_write_dir

    def test_steps_turn_name_tag_into_build(self):
        df = Dockerfile.name_tag("alpine:3").add_build_steps("RUN apk add curl")
        assert df.needs_build
        assert df.needs_write_dir
        assert df.render() == "FROM alpine:3\nRUN apk add curl\n"

    def test_contents_render_appends_steps(self):
        df = Dockerfile.contents("FROM debian").add_build_steps("RUN true", "USER nobody")
        assert df.render() == "FROM debian\nRUN true\nUSER nobody\n"

    def test_path_used_in_place(self, tmp_path):
        path = tmp_path / "app.dockerfile"
        path.write_text("FROM busybox\n")
        df = Dockerfile.path(path)
        assert df.needs_build
        assert not df.needs_write_dir
        assert df.render() == "FROM busybox\n"

    def test_equal_definitions_are_equal_keys(self):
        a = ContainerSpec("a", Dockerfile.contents("FROM x"), build_args=["--no-cache"])
        b = ContainerSpec("b", Dockerfile.contents("FROM x"), build_args=["--no-cache"])
        c = ContainerSpec("c", Dockerfile.contents("FROM x"))
        assert a.build_key() == b.build_key()
        assert a.build_key() != c.build_key()


class TestContainerSpec:
    def test_host_name_defaults_to_name(self):
        spec = ContainerSpec("db", Dockerfile.name_tag("postgres:16"))
        assert spec.host_name == "db"

    def test_empty_name_rejected(self):
        with pytest.raises(SpecError):
            ContainerSpec("", Dockerfile.name_tag("x"))

    def test_command_with_entrypoint(self):
        spec = ContainerSpec("w", Dockerfile.name_tag("x"), entrypoint_args=["--a"])
        assert spec.command() == ["--a"]
        spec.set_entrypoint("/bin/run", ["--b"])
        assert spec.command() == ["/bin/run", "--a", "--b"]

    def test_external_entrypoint_mounts_with_unique_target(self, tmp_path):
        binary = tmp_path / "tool"
        binary.write_text("#!/bin/sh\n")
        spec = ContainerSpec("w", Dockerfile.name_tag("x")).external_entrypoint(binary, ["go"])
        host, target = spec.volumes[0]
        assert host == str(binary.resolve())
        assert target.startswith("/tool_")
        assert spec.command() == [target, "go"]

    def test_copy_entrypoint_adds_build_steps(self, tmp_path):
        binary = tmp_path / "tool"
        binary.write_text("#!/bin/sh\n")
        spec = ContainerSpec("w", Dockerfile.name_tag("alpine")).copy_entrypoint(binary)
        assert spec.dockerfile.steps == ("COPY ./tool /tool", "RUN chmod +x /tool")
        assert spec.dockerfile.context_files == (binary.resolve(),)
        assert spec.entrypoint == "/tool"

    def test_copy_entrypoint_refuses_path_dockerfile(self, tmp_path):
        binary = tmp_path / "tool"
        binary.write_text("")
        spec = ContainerSpec("w", Dockerfile.path(tmp_path / "Dockerfile"))
        with pytest.raises(SpecError):
            spec.copy_entrypoint(binary)

    def test_missing_entrypoint_binary(self, tmp_path):
        spec = ContainerSpec("w", Dockerfile.name_tag("x"))
        with pytest.raises(SpecError):
            spec.external_entrypoint(tmp_path / "nope")


def test_safe_name():
    assert safe_name("My App/v2") == "my-app-v2"
    assert safe_name("___") == "___"
    assert safe_name("!!!") == "image"


class TestPrecheck:
    def test_missing_dockerfile(self, tmp_path):
        spec = ContainerSpec("w", Dockerfile.path(tmp_path / "missing.dockerfile"))
        with pytest.raises(SpecError, match="does not exist"):
            _container(spec, FakeTransport()).precheck()

    def test_host_volumes_resolved_and_named_volumes_kept(self, tmp_path):
        (tmp_path / "data").mkdir()
        spec = ContainerSpec("w", Dockerfile.name_tag("x"))
        spec.add_volume(tmp_path / "data", "/data").add_volume("cache", "/cache")
        container = _container(spec, FakeTransport())
        container.precheck()
        data = str((tmp_path / "data").resolve())
        assert container.volumes == [(data, "/data"), ("cache", "/cache")]

    def test_missing_volume_source(self, tmp_path):
        spec = ContainerSpec("w", Dockerfile.name_tag("x")).add_volume(tmp_path / "gone", "/g")
        with pytest.raises(SpecError, match="volume source"):
            _container(spec, FakeTransport()).precheck()


class TestBuild:
    @pytest.mark.asyncio
    async def test_name_tag_is_not_built(self):
        runtime = FakeTransport()
        spec = ContainerSpec("w", Dockerfile.name_tag("alpine:3"))
        assert await build_image(spec, "tag:1", runtime=runtime) == "alpine:3"
        assert runtime.builds == []

    @pytest.mark.asyncio
    async def test_contents_written_to_write_dir(self, tmp_path):
        runtime = FakeTransport()
        helper = tmp_path / "helper.sh"
        helper.write_text("echo hi\n")
        df = Dockerfile.contents("FROM alpine").add_context_files(helper)
        spec = ContainerSpec("w", df)
        out = tmp_path / "out"
        image = await build_image(spec, "net-w:abc", runtime=runtime, dockerfile_write_dir=out)
        assert image == "net-w:abc"
        request = runtime.builds[0]
        assert request.dockerfile == (out / "net-w-abc.dockerfile").resolve()
        assert request.dockerfile.read_text() == "FROM alpine"
        assert request.context == out.resolve()
        assert (out / "helper.sh").read_text() == "echo hi\n"

    @pytest.mark.asyncio
    async def test_path_dockerfile_uses_its_directory_as_context(self, tmp_path):
        runtime = FakeTransport()
        path = tmp_path / "app.dockerfile"
        path.write_text("FROM busybox\n")
        spec = ContainerSpec("w", Dockerfile.path(path), build_args=["--pull"])
        await build_image(spec, "t:1", runtime=runtime)
        request = runtime.builds[0]
        assert request.context == tmp_path.resolve()
        assert request.build_args == ["--pull"]

    @pytest.mark.asyncio
    async def test_build_tag_override(self, tmp_path):
        runtime = FakeTransport()
        spec = ContainerSpec("w", Dockerfile.contents("FROM x"), build_tag="custom:1")
        assert await build_image(spec, "t:1", runtime=runtime, dockerfile_write_dir=tmp_path) == (
            "custom:1"
        )

    @pytest.mark.asyncio
    async def test_failed_build_carries_log(self, tmp_path):
        runtime = FakeTransport(failing_builds={"broken"})
        spec = ContainerSpec("w", Dockerfile.contents("FROM x"))
        with pytest.raises(BuildFailedError) as exc_info:
            await build_image(spec, "broken:1", runtime=runtime, dockerfile_write_dir=tmp_path)
        assert "Error: the build step failed" in exc_info.value.log
        assert exc_info.value.kind == "build"


class TestCreateAndStart:
    @pytest.mark.asyncio
    async def test_request_uses_uuid_suffixed_names(self):
        runtime = FakeTransport()
        spec = ContainerSpec("web", Dockerfile.name_tag("nginx"), host_name="frontend")
        spec.set_env("MODE", "test")
        container = _container(spec, runtime)
        await container.create_and_start()
        request = runtime.requests[container.container_id]
        assert request.name == "web_u1"
        assert request.hostname == "frontend_u1"
        assert request.network == "net_u1"
        assert request.env == {"MODE": "test"}
        assert container.runner is runtime.runner_for("web")

    def test_hostname_without_uuid(self):
        runtime = FakeTransport()
        spec = ContainerSpec("db", Dockerfile.name_tag("pg"), no_uuid_for_host_name=True)
        container = _container(spec, runtime)
        assert container.create_request().hostname == "db"

    @pytest.mark.asyncio
    async def test_create_failure_propagates(self):
        runtime = FakeTransport(failing_creates={"web"})
        container = _container(ContainerSpec("web", Dockerfile.name_tag("nginx")), runtime)
        with pytest.raises(CreateFailedError):
            await container.create_and_start()
        assert container.runner is None

    def test_unbuilt_image_rejected(self):
        container = _container(ContainerSpec("w", Dockerfile.contents("FROM x")), FakeTransport())
        with pytest.raises(SpecError, match="not been built"):
            container.create_request()
