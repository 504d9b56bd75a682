"""Readiness probes: when may a container's dependents start?

A probe is an async callable taking a ProbeContext. It returns once the
container is ready and raises (any OrchestratorError) if it never will be.
Without a probe a container is ready as soon as it has started, or, with
``health_check=True``, once the runtime reports it healthy.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from orchard.errors import ReadinessError
from orchard.logger import logger
from orchard.messenger import MessageKind, NetMessenger

if TYPE_CHECKING:
    from orchard.container import Container
    from orchard.network._network import ContainerNetwork


@dataclass
class ProbeContext:
    network: ContainerNetwork
    container: Container


ReadinessProbe = Callable[[ProbeContext], Awaitable[None]]


def messenger_probe(
    port: int,
    *,
    host: str | None = None,
    retries: int | None = None,
    delay: float | None = None,
) -> ReadinessProbe:
    """Ready once the container's ``signal_ready(port)`` sends a READY message.

    The address defaults to the container's IP on the run's network; pass
    ``host`` when the port is published elsewhere.
    """

    async def probe(ctx: ProbeContext) -> None:
        address = host or await ctx.network.wait_get_ip_addr(ctx.container.name)
        messenger = await NetMessenger.connect(address, port, retries=retries, delay=delay)
        async with messenger:
            message = await messenger.recv()
        if message.kind is not MessageKind.READY:
            raise ReadinessError(
                ctx.container.name,
                f"expected a ready message, got {message.kind.value}: {message.payload_text()}",
            )
        logger.debug("Readiness received", container=ctx.container.name, port=port)

    return probe


def delay_probe(seconds: float) -> ReadinessProbe:
    """Ready a fixed time after start (for images that cannot signal)."""

    async def probe(ctx: ProbeContext) -> None:
        await asyncio.sleep(seconds)

    return probe


def health_probe(timeout: float | None = None) -> ReadinessProbe:
    """Ready once the runtime reports the container healthy."""

    async def probe(ctx: ProbeContext) -> None:
        await ctx.network.wait_healthy([ctx.container.name], timeout)

    return probe
