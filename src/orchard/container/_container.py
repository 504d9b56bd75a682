"""Container: drives one ContainerSpec through build, create, start and stop."""

from __future__ import annotations

import asyncio
import re
import shutil
from pathlib import Path

from orchard.command import LogFile
from orchard.config import get_settings
from orchard.container._spec import ContainerSpec
from orchard.errors import BuildFailedError, SpecError
from orchard.logger import logger
from orchard.runtime import (
    AttachOptions,
    BuildRequest,
    ContainerRunner,
    CreateRequest,
    RuntimeTransport,
)

_UNSAFE_TAG_CHARS = re.compile(r"[^a-z0-9_.-]+")


def safe_name(text: str) -> str:
    """Lowercase and strip characters Docker rejects in image names and file names."""
    return _UNSAFE_TAG_CHARS.sub("-", text.lower()).strip("-.") or "image"


def _tail(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]


async def build_image(
    spec: ContainerSpec,
    tag: str,
    *,
    runtime: RuntimeTransport,
    dockerfile_write_dir: Path | None = None,
    debug: bool = False,
    log: LogFile | None = None,
) -> str:
    """Build ``spec``'s image (if it needs one) and return the image reference."""
    df = spec.dockerfile
    if not df.needs_build:
        return df.value
    tag = spec.build_tag or tag

    if df.kind == "path" and not df.steps:
        dockerfile = Path(df.value).resolve()
        context = dockerfile.parent
    else:
        if dockerfile_write_dir is None:
            raise SpecError(f"{spec.name}: a written Dockerfile needs dockerfile_write_dir")
        write_dir = dockerfile_write_dir.resolve()
        write_dir.mkdir(parents=True, exist_ok=True)
        dockerfile = write_dir / f"{safe_name(tag)}.dockerfile"
        text = await asyncio.to_thread(df.render)
        await asyncio.to_thread(dockerfile.write_text, text)
        for src in df.context_files:
            await asyncio.to_thread(shutil.copy2, src, write_dir / src.name)
        context = Path(df.value).resolve().parent if df.kind == "path" else write_dir

    logger.info("Building image", container=spec.name, tag=tag)
    result = await runtime.build(
        BuildRequest(context=context, dockerfile=dockerfile, tag=tag, build_args=spec.build_args),
        debug=debug,
        log=log,
    )
    if not result.successful():
        output = result.stdout_text() + result.stderr_text()
        raise BuildFailedError(
            spec.name,
            _tail(output, get_settings().container.build_log_chars),
            detail=f"tag {tag}, status {result.status}",
        )
    return tag


class Container:
    """One ContainerSpec placed in a specific network run."""

    def __init__(
        self,
        spec: ContainerSpec,
        *,
        uuid: str,
        network_name: str,
        runtime: RuntimeTransport,
    ) -> None:
        self.spec = spec
        self.uuid = uuid
        self.network_name = network_name
        self.runtime = runtime
        self.image: str | None = None if spec.dockerfile.needs_build else spec.dockerfile.value
        self.volumes: list[tuple[str, str]] = list(spec.volumes)
        self.container_id: str | None = None
        self.runner: ContainerRunner | None = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def runtime_name(self) -> str:
        return f"{self.spec.name}_{self.uuid}"

    @property
    def hostname(self) -> str:
        assert self.spec.host_name is not None
        if self.spec.no_uuid_for_host_name:
            return self.spec.host_name
        return f"{self.spec.host_name}_{self.uuid}"

    def precheck(self) -> None:
        """Fail fast on missing Dockerfiles, context files and volume sources."""
        df = self.spec.dockerfile
        if df.kind == "path" and not Path(df.value).is_file():
            raise SpecError(f"{self.name}: Dockerfile {df.value} does not exist")
        for src in df.context_files:
            if not src.is_file():
                raise SpecError(f"{self.name}: build context file {src} does not exist")
        resolved: list[tuple[str, str]] = []
        for host, target in self.spec.volumes:
            if "/" not in host and not host.startswith("."):
                # A named runtime volume, not a host path
                resolved.append((host, target))
                continue
            path = Path(host).expanduser()
            if not path.exists():
                raise SpecError(f"{self.name}: volume source {host} does not exist")
            resolved.append((str(path.resolve()), target))
        self.volumes = resolved

    async def build(
        self,
        tag: str,
        *,
        dockerfile_write_dir: Path | None = None,
        debug: bool = False,
        log: LogFile | None = None,
    ) -> str:
        self.image = await build_image(
            self.spec,
            tag,
            runtime=self.runtime,
            dockerfile_write_dir=dockerfile_write_dir,
            debug=debug,
            log=log,
        )
        return self.image

    def create_request(self) -> CreateRequest:
        if self.image is None:
            raise SpecError(f"{self.name}: image has not been built")
        return CreateRequest(
            name=self.runtime_name,
            image=self.image,
            network=self.network_name,
            hostname=self.hostname,
            workdir=self.spec.workdir,
            env=dict(self.spec.environment_vars),
            volumes=self.volumes,
            create_args=list(self.spec.create_args),
            command=self.spec.command(),
        )

    async def create_and_start(
        self,
        *,
        logs_dir: Path | None = None,
        debug: bool = False,
        log: bool = False,
        network_log: LogFile | None = None,
    ) -> ContainerRunner:
        """Create the container and start it attached; raises CreateFailedError."""
        self.container_id = await self.runtime.create(self.create_request(), log=network_log)
        logger.debug(
            "Created container",
            container=self.name,
            runtime_name=self.runtime_name,
            id=self.container_id,
        )
        stdout_log = stderr_log = None
        if log and logs_dir is not None:
            stdout_log = LogFile(logs_dir / f"container_{self.name}_stdout.log")
            stderr_log = LogFile(logs_dir / f"container_{self.name}_stderr.log")
        self.runner = await self.runtime.start(
            self.container_id,
            AttachOptions(
                label=self.name,
                debug=debug,
                stdout_log=stdout_log,
                stderr_log=stderr_log,
            ),
        )
        logger.info("Started container", container=self.name, runtime_name=self.runtime_name)
        return self.runner

    async def stop(self, grace: int | None = None) -> None:
        """Best effort: an already stopped or removed container is not an error."""
        if self.container_id is None:
            return
        if grace is None:
            grace = get_settings().container.stop_grace
        await self.runtime.stop(self.container_id, grace)

    async def remove(self) -> None:
        if self.container_id is None:
            return
        await self.runtime.remove(self.container_id)
