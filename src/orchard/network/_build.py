"""Build phase: group containers by build definition, build each group once."""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from orchard.command import LogFile
from orchard.container import Container, safe_name
from orchard.errors import BuildFailedError, OrchestratorError, SkippedError
from orchard.logger import logger


@dataclass
class BuildGroup:
    """Containers sharing one Dockerfile + build args; built once per run."""

    tag: str
    members: list[Container] = field(default_factory=list)

    @property
    def leader(self) -> Container:
        return self.members[0]


def plan_builds(containers: list[Container], network_base: str) -> list[BuildGroup]:
    """Group every container that needs a build by its build key, in insertion order."""
    groups: dict[object, BuildGroup] = {}
    for container in containers:
        if not container.spec.dockerfile.needs_build:
            continue
        key = container.spec.build_key()
        group = groups.get(key)
        if group is None:
            digest = hashlib.sha256(repr(key).encode()).hexdigest()[:12]
            tag = f"{safe_name(network_base)}-{safe_name(container.name)}:{digest}"
            group = groups[key] = BuildGroup(tag=tag)
        group.members.append(container)
    return list(groups.values())


async def build_all(
    groups: list[BuildGroup],
    *,
    max_concurrent: int,
    dockerfile_write_dir: Path | None = None,
    debug_for: Callable[[Container], bool] = lambda container: False,
    log: LogFile | None = None,
) -> dict[str, OrchestratorError]:
    """Build every group, at most ``max_concurrent`` at a time.

    After the first failure no new build starts (builds already running are
    allowed to finish). Returns the per-container errors: empty on success,
    otherwise the failed groups' containers carry their build error and every
    other container in ``groups`` is marked skipped.
    """
    semaphore = asyncio.Semaphore(max_concurrent)
    failed: dict[int, OrchestratorError] = {}

    async def build_group(index: int, group: BuildGroup) -> None:
        async with semaphore:
            if failed:
                return
            try:
                image = await group.leader.build(
                    group.tag,
                    dockerfile_write_dir=dockerfile_write_dir,
                    debug=any(debug_for(c) for c in group.members),
                    log=log,
                )
            except OrchestratorError as exc:
                logger.error("Image build failed", container=group.leader.name, tag=group.tag)
                failed[index] = exc
                return
            for member in group.members[1:]:
                member.image = image
            logger.info("Image built", tag=image, containers=[c.name for c in group.members])

    await asyncio.gather(*(build_group(i, g) for i, g in enumerate(groups)))
    if not failed:
        return {}

    errors: dict[str, OrchestratorError] = {}
    for index, group in enumerate(groups):
        exc = failed.get(index)
        for member in group.members:
            if exc is None:
                errors[member.name] = SkippedError(member.name, "an image build failed")
            elif isinstance(exc, BuildFailedError):
                errors[member.name] = BuildFailedError(member.name, exc.log, exc.detail)
            else:
                errors[member.name] = exc
    return errors
