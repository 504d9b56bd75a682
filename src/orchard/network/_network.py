"""ContainerNetwork: build, start, supervise and tear down a group of containers.

A run goes through four phases. Containers sharing a build definition are
built once. An isolated ``{name}_{uuid}`` network is created. Every container
is started concurrently, gated only by its dependencies' readiness. A fan-in
supervisor then waits until the run completes, a container fails, the timeout
elapses or an interrupt arrives, and stops whatever is still running.
Teardown happens exactly once and never raises; its errors end up on
``RunOutcome.teardown_errors``.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import uuid
from collections.abc import Iterable
from enum import StrEnum
from pathlib import Path

from orchard.command import Command, CommandResult, LogFile
from orchard.config import get_settings
from orchard.container import Container, ContainerSpec, safe_name
from orchard.errors import (
    AlreadyTerminatedError,
    CreateFailedError,
    HealthCheckError,
    NonZeroExitError,
    OrchestratorError,
    ReadinessError,
    RunCancelledError,
    RunFailedError,
    RunTimeoutError,
    SkippedError,
    SpecError,
    StoppedError,
)
from orchard.interrupts import interrupts
from orchard.logger import logger
from orchard.network._build import build_all, plan_builds
from orchard.network._outcome import RunOutcome
from orchard.network._readiness import ProbeContext, health_probe
from orchard.runtime import RuntimeTransport, get_runtime

Entry = CommandResult | OrchestratorError


class NetworkState(StrEnum):
    UNBUILT = "unbuilt"
    BUILT = "built"
    NETWORK_CREATED = "network_created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    TERMINATED = "terminated"


_FINAL_STATES = frozenset(
    {
        NetworkState.COMPLETED,
        NetworkState.FAILED,
        NetworkState.TIMED_OUT,
        NetworkState.TERMINATED,
    }
)

# Teardown tasks scheduled from __del__ must be referenced until they finish
_background_teardowns: set[asyncio.Task[None]] = set()


@dataclasses.dataclass(frozen=True)
class _StopReason:
    """Why the orchestrator stopped containers; ``error`` None means normal completion."""

    error: type[OrchestratorError] | None
    detail: str = ""


_COMPLETED = _StopReason(None)


class ContainerNetwork:
    """Owns named containers plus one isolated runtime network per run.

    A network instance runs once. Build a new one (with the same specs) to
    run again; every run gets a fresh UUID, so concurrent runs never collide.
    """

    def __init__(
        self,
        name: str,
        containers: Iterable[ContainerSpec] = (),
        *,
        dockerfile_write_dir: str | Path | None = None,
        logs_dir: str | Path | None = None,
        debug: bool = False,
        log: bool = False,
        internal: bool | None = None,
        runtime: RuntimeTransport | None = None,
    ) -> None:
        if not name:
            raise SpecError("Network name must not be empty")
        self.name = name
        self.uuid = uuid.uuid4().hex[:12]
        self.network_name = f"{name}_{self.uuid}"
        self.dockerfile_write_dir = Path(dockerfile_write_dir) if dockerfile_write_dir else None
        self.logs_dir = Path(logs_dir) if logs_dir else None
        self.debug = debug
        self.log = log
        self.internal = get_settings().network.internal if internal is None else internal
        self.runtime = runtime or get_runtime()
        self.state = NetworkState.UNBUILT
        self.teardown_errors: list[Exception] = []

        self._specs: dict[str, ContainerSpec] = {}
        self._containers: dict[str, Container] = {}
        self._entries: dict[str, Entry] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._ready: dict[str, asyncio.Future[bool]] = {}
        self._changed = asyncio.Event()
        self._stop_reason: _StopReason | None = None
        self._stopped_by_us: set[str] = set()
        self._network_log: LogFile | None = None
        self._network_active = False
        self._started_at: float | None = None
        self._outcome: RunOutcome | None = None
        self._torn_down = False

        for spec in containers:
            self.add_container(spec)

    def __repr__(self) -> str:
        return f"ContainerNetwork({self.network_name!r}, state={self.state.value})"

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_container(self, spec: ContainerSpec) -> ContainerNetwork:
        """Register a copy of ``spec``; later edits to either side stay separate."""
        if self.state is not NetworkState.UNBUILT:
            raise SpecError(f"{self.name}: containers can only be added before start()")
        if spec.name in self._specs:
            raise SpecError(f"{self.name}: duplicate container name {spec.name!r}")
        if spec.dockerfile.needs_write_dir and self.dockerfile_write_dir is None:
            raise SpecError(
                f"{spec.name}: a generated Dockerfile needs the network's dockerfile_write_dir"
            )
        self._specs[spec.name] = spec.copy()
        try:
            self._check_dependencies(require_known=False)
        except SpecError:
            del self._specs[spec.name]
            raise
        return self

    def add_common_volumes(self, volumes: Iterable[tuple[str, str]]) -> ContainerNetwork:
        """Mount the same (host, container) pairs into every registered container."""
        volumes = list(volumes)
        for spec in self._specs.values():
            spec.volumes.extend(volumes)
        return self

    def add_common_entrypoint_args(self, args: Iterable[str]) -> ContainerNetwork:
        args = list(args)
        for spec in self._specs.values():
            spec.entrypoint_args.extend(args)
        return self

    def _spec(self, name: str) -> ContainerSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise SpecError(f"{self.name}: no container named {name!r}") from None

    def container_name_with_uuid(self, name: str) -> str:
        self._spec(name)
        return f"{name}_{self.uuid}"

    def hostname_with_uuid(self, name: str) -> str:
        spec = self._spec(name)
        assert spec.host_name is not None
        if spec.no_uuid_for_host_name:
            return spec.host_name
        return f"{spec.host_name}_{self.uuid}"

    def get_container(self, name: str) -> Container:
        self._spec(name)
        if name not in self._containers:
            raise SpecError(f"{self.name}: {name!r} has not been placed yet; call start()")
        return self._containers[name]

    def active_names(self) -> list[str]:
        """Logical names of containers whose runner is still attached."""
        return [
            name
            for name, container in self._containers.items()
            if container.runner is not None and not container.runner.finished
        ]

    def inactive_names(self) -> list[str]:
        active = set(self.active_names())
        return [name for name in self._specs if name not in active]

    def _check_dependencies(self, *, require_known: bool) -> None:
        """Reject self-dependencies and cycles (and, when starting, unknown names)."""
        for name, spec in self._specs.items():
            for dep in spec.depends_on:
                if dep == name:
                    raise SpecError(f"{name}: a container cannot depend on itself")
                if require_known and dep not in self._specs:
                    raise SpecError(f"{name}: depends on unknown container {dep!r}")

        done: set[str] = set()
        visiting: list[str] = []

        def visit(name: str) -> None:
            if name in done or name not in self._specs:
                return
            if name in visiting:
                cycle = visiting[visiting.index(name) :] + [name]
                raise SpecError(f"{self.name}: dependency cycle {' -> '.join(cycle)}")
            visiting.append(name)
            for dep in self._specs[name].depends_on:
                visit(dep)
            visiting.pop()
            done.add(name)

        for name in self._specs:
            visit(name)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _debug_for(self, container: Container) -> bool:
        return self.debug if container.spec.debug is None else container.spec.debug

    def _log_for(self, container: Container) -> bool:
        return self.log if container.spec.log is None else container.spec.log

    async def start(self) -> None:
        """Build images, create the network and launch every container.

        Returns once every container task is running; use
        ``wait_with_timeout`` to supervise them. A build failure raises
        RunFailedError before anything was created.
        """
        if self.state is not NetworkState.UNBUILT:
            raise SpecError(f"{self.name}: a ContainerNetwork can only be started once")
        if not self._specs:
            raise SpecError(f"{self.name}: no containers to run")
        self._check_dependencies(require_known=True)
        cfg = get_settings().network

        self._containers = {
            name: Container(
                spec, uuid=self.uuid, network_name=self.network_name, runtime=self.runtime
            )
            for name, spec in self._specs.items()
        }
        for container in self._containers.values():
            container.precheck()

        if self.logs_dir is not None:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            path = self.logs_dir / f"container_network_{self.name}.log"
            path.write_bytes(b"")
            self._network_log = LogFile(path, append=True)

        logger.info("Building images", network=self.network_name)
        errors = await build_all(
            plan_builds(list(self._containers.values()), f"{cfg.name_prefix}-{self.name}"),
            max_concurrent=cfg.max_concurrent_builds,
            dockerfile_write_dir=self.dockerfile_write_dir,
            debug_for=self._debug_for,
            log=self._network_log,
        )
        if errors:
            for name in self._specs:
                self._entries[name] = errors.get(name) or SkippedError(
                    name, "an image build failed"
                )
            self.state = NetworkState.FAILED
            outcome = self._finish_outcome()
            raise RunFailedError(outcome, outcome.report())
        self.state = NetworkState.BUILT

        try:
            await self.runtime.network_create(
                self.network_name, internal=self.internal, log=self._network_log
            )
        except OrchestratorError:
            self.state = NetworkState.FAILED
            raise
        self._network_active = True
        self.state = NetworkState.NETWORK_CREATED
        logger.info("Network created", network=self.network_name, internal=self.internal)

        loop = asyncio.get_running_loop()
        self._ready = {name: loop.create_future() for name in self._specs}
        self._started_at = loop.time()
        for name in self._specs:
            self._tasks[name] = asyncio.create_task(
                self._drive(name), name=f"orchard:{self.network_name}:{name}"
            )
        self.state = NetworkState.RUNNING

    # ------------------------------------------------------------------
    # Per-container driver
    # ------------------------------------------------------------------

    def _record(self, name: str, entry: Entry) -> None:
        # The first entry wins; later ones only describe the consequences
        if name in self._entries:
            return
        self._entries[name] = entry
        if isinstance(entry, OrchestratorError):
            logger.warning(
                "Container failed", network=self.network_name, container=name, kind=entry.kind
            )
        else:
            logger.info(
                "Container finished",
                network=self.network_name,
                container=name,
                status=entry.status,
            )
        self._changed.set()

    def _has_dependents(self, name: str) -> bool:
        return any(name in spec.depends_on for spec in self._specs.values())

    async def _drive(self, name: str) -> None:
        ready = self._ready[name]
        try:
            await self._drive_container(name)
        except asyncio.CancelledError:
            self._record(name, self._interrupted_entry(name))
            raise
        except OrchestratorError as exc:
            self._record(name, exc)
        finally:
            if not ready.done():
                ready.set_result(False)

    async def _drive_container(self, name: str) -> None:
        container = self._containers[name]
        spec = container.spec

        for dep in spec.depends_on:
            if not await asyncio.shield(self._ready[dep]):
                self._record(name, SkippedError(name, f"dependency {dep!r} never became ready"))
                return
        if self._stop_reason is not None:
            self._record(name, SkippedError(name, "the run was already stopping"))
            return

        try:
            runner = await container.create_and_start(
                logs_dir=self.logs_dir,
                debug=self._debug_for(container),
                log=self._log_for(container),
                network_log=self._network_log,
            )
        except CreateFailedError as exc:
            self._record(name, exc)
            return

        waiter = asyncio.ensure_future(runner.wait_to_completion())
        try:
            failure = await self._become_ready(container, waiter)
            if failure is None:
                self._ready[name].set_result(True)
                if spec.health_check:
                    failure = await self._watch_health(container, waiter)
            if failure is not None:
                # Still running; the supervisor's stop path ends it
                self._record(name, failure)
                if not self._ready[name].done():
                    self._ready[name].set_result(False)
            result = await waiter
        finally:
            if not waiter.done():
                waiter.cancel()
        self._finish(name, dataclasses.replace(result, label=f"container {name}"))

    async def _become_ready(
        self, container: Container, waiter: asyncio.Future[CommandResult]
    ) -> OrchestratorError | None:
        """Run the readiness probe against the container's exit; None means ready."""
        spec = container.spec
        probe = spec.readiness
        if probe is None and spec.health_check and self._has_dependents(spec.name):
            probe = health_probe()
        if probe is None:
            return None

        probe_task = asyncio.ensure_future(probe(ProbeContext(self, container)))
        try:
            await asyncio.wait([probe_task, waiter], return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not probe_task.done():
                probe_task.cancel()
                await asyncio.wait([probe_task])

        if probe_task.done() and not probe_task.cancelled():
            exc = probe_task.exception()
            if exc is None:
                logger.info("Container ready", network=self.network_name, container=spec.name)
                return None
            if isinstance(exc, ReadinessError | HealthCheckError):
                return exc
            if isinstance(exc, OrchestratorError):
                return ReadinessError(spec.name, str(exc))
            raise exc

        result = waiter.result()
        return ReadinessError(
            spec.name, f"exited with status {result.status} before becoming ready", result=result
        )

    async def _watch_health(
        self, container: Container, waiter: asyncio.Future[CommandResult]
    ) -> OrchestratorError | None:
        monitor = asyncio.ensure_future(self._poll_health(container))
        try:
            done, _ = await asyncio.wait([monitor, waiter], return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not monitor.done():
                monitor.cancel()
                await asyncio.wait([monitor])
        if monitor in done:
            exc = monitor.exception()
            if isinstance(exc, OrchestratorError):
                return exc
            if exc is not None:
                raise exc
        return None

    async def _poll_health(self, container: Container) -> None:
        """Return when the container stops; raise HealthCheckError once it is unhealthy."""
        assert container.container_id is not None
        interval = get_settings().network.health_poll_interval
        while True:
            status = await self.runtime.inspect(container.container_id)
            if status is None or not status.running:
                return
            if status.health == "unhealthy":
                raise HealthCheckError(container.name, "the runtime reported it unhealthy")
            await asyncio.sleep(interval)

    def _finish(self, name: str, result: CommandResult) -> None:
        existing = self._entries.get(name)
        if existing is not None:
            if getattr(existing, "result", False) is None:
                existing.result = result  # type: ignore[union-attr]
            return
        if name in self._stopped_by_us:
            result = dataclasses.replace(result, status=None)
            self._record(name, self._stopped_entry(name, result))
            return
        spec = self._specs[name]
        if result.successful() or spec.allow_unsuccessful:
            self._record(name, result)
        else:
            self._record(name, NonZeroExitError(result, context=f"container {name}"))

    def _stopped_entry(
        self, name: str, result: CommandResult | None, reason: _StopReason | None = None
    ) -> Entry:
        reason = reason or self._stop_reason or _COMPLETED
        if reason.error is None:
            if result is not None:
                return result
            return SkippedError(name, "the run completed before it started")
        return reason.error(name, reason.detail, result=result)  # type: ignore[call-arg]

    def _interrupted_entry(self, name: str) -> Entry:
        container = self._containers[name]
        runner = container.runner
        if runner is None:
            return SkippedError(name, "the run stopped before it started")
        result = runner.get_command_result() or CommandResult(
            Command(container.runtime_name),
            None,
            runner.stdout_record(),
            runner.stderr_record(),
        )
        result = dataclasses.replace(result, status=None, label=f"container {name}")
        return self._stopped_entry(
            name, result, self._stop_reason or _StopReason(RunCancelledError, "cancelled")
        )

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def _collect_crashed(self) -> None:
        for name, task in self._tasks.items():
            if name in self._entries or not task.done() or task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                logger.error(
                    "Container task crashed",
                    network=self.network_name,
                    container=name,
                    exc_info=exc,
                )
                self._record(name, OrchestratorError(f"{name}: task crashed: {exc!r}"))

    def _evaluate(self) -> NetworkState | None:
        self._collect_crashed()
        if any(isinstance(entry, OrchestratorError) for entry in self._entries.values()):
            return NetworkState.FAILED
        expected = [name for name, spec in self._specs.items() if spec.expect_exit]
        if expected and all(name in self._entries for name in expected):
            return NetworkState.COMPLETED
        if len(self._entries) == len(self._specs):
            return NetworkState.COMPLETED
        return None

    async def wait_with_timeout(self, timeout: float) -> RunOutcome:
        """Supervise the started containers until the run is decided.

        The timeout is measured from the moment the containers were launched.
        Whatever still runs when the run is decided is stopped before this
        returns; the returned outcome holds an entry for every container.
        """
        if self._outcome is not None:
            return self._outcome
        if self.state is not NetworkState.RUNNING or self._started_at is None:
            raise SpecError(f"{self.name}: the network is not running; call start() first")
        loop = asyncio.get_running_loop()
        deadline = self._started_at + timeout
        verdict: NetworkState | None = None

        with interrupts.subscribe() as interrupted:
            interrupt_waiter = asyncio.ensure_future(interrupted.wait())
            try:
                while True:
                    self._changed.clear()
                    verdict = self._evaluate()
                    if verdict is not None:
                        break
                    if interrupt_waiter.done():
                        verdict = NetworkState.TERMINATED
                        break
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        verdict = NetworkState.TIMED_OUT
                        break
                    changed = asyncio.ensure_future(self._changed.wait())
                    pending = [task for task in self._tasks.values() if not task.done()]
                    try:
                        await asyncio.wait(
                            [*pending, changed, interrupt_waiter],
                            timeout=remaining,
                            return_when=asyncio.FIRST_COMPLETED,
                        )
                    finally:
                        changed.cancel()
            finally:
                interrupt_waiter.cancel()

        logger.info("Run decided", network=self.network_name, state=verdict.value)
        reasons = {
            NetworkState.COMPLETED: _COMPLETED,
            NetworkState.FAILED: _StopReason(
                StoppedError, "stopped after another container failed"
            ),
            NetworkState.TIMED_OUT: _StopReason(RunTimeoutError, f"run exceeded {timeout}s"),
            NetworkState.TERMINATED: _StopReason(RunCancelledError, "interrupted"),
        }
        await self._stop_all(reasons[verdict])
        self.state = verdict
        return self._finish_outcome()

    def _finish_outcome(self) -> RunOutcome:
        self._collect_crashed()
        for name in self._specs:
            if name not in self._entries:
                self._entries[name] = SkippedError(name, "never started")
        self._outcome = RunOutcome(
            self.network_name,
            {name: self._entries[name] for name in self._specs},
            self.teardown_errors,
        )
        return self._outcome

    async def _stop_all(self, reason: _StopReason) -> None:
        """Stop every running container concurrently and collect every task."""
        if self._stop_reason is None:
            self._stop_reason = reason
        stops = []
        for name, container in self._containers.items():
            task = self._tasks.get(name)
            if container.runner is not None and not container.runner.finished:
                self._stopped_by_us.add(name)
                stops.append(self._stop_container(container))
            elif task is not None and not task.done():
                task.cancel()
        if stops:
            logger.info("Stopping containers", network=self.network_name, count=len(stops))
            await asyncio.gather(*stops)

        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            _, still = await asyncio.wait(
                pending, timeout=get_settings().network.result_timeout
            )
            for task in still:
                task.cancel()
            if still:
                await asyncio.wait(still)

    async def _stop_container(self, container: Container) -> None:
        """Stop with grace; force remove and terminate the runner if that hangs or fails."""
        cfg = get_settings().container
        try:
            await asyncio.wait_for(container.stop(cfg.stop_grace), cfg.stop_timeout)
            return
        except TimeoutError:
            logger.warning(
                "Stop timed out, force removing",
                network=self.network_name,
                container=container.name,
                timeout=cfg.stop_timeout,
            )
        except OrchestratorError as exc:
            logger.warning(
                "Stop failed, force removing",
                network=self.network_name,
                container=container.name,
                error=str(exc),
            )
            self.teardown_errors.append(exc)
        await self._force_remove(container)

    async def _force_remove(self, container: Container) -> None:
        try:
            await container.remove()
        except OrchestratorError as exc:
            logger.warning(
                "Remove failed", network=self.network_name, container=container.name, error=str(exc)
            )
            self.teardown_errors.append(exc)
        runner = container.runner
        if runner is not None and not runner.finished:
            with contextlib.suppress(AlreadyTerminatedError):
                await runner.terminate()

    async def run(self, timeout: float) -> RunOutcome:
        """Build, start and supervise the network, then tear it down.

        Raises RunFailedError (carrying the outcome and the rendered report)
        when any container failed, the timeout elapsed or the run was
        interrupted. Cleanup has completed by the time it is raised.
        """
        interrupts.install()
        try:
            await self.start()
            outcome = await self.wait_with_timeout(timeout)
        finally:
            await self.terminate()
        if not outcome.successful():
            raise RunFailedError(outcome, outcome.report())
        return outcome

    # ------------------------------------------------------------------
    # Probing helpers
    # ------------------------------------------------------------------

    def _created(self, name: str) -> Container:
        container = self.get_container(name)
        if container.container_id is None:
            raise SpecError(f"{self.name}: container {name!r} has not been created")
        return container

    async def wait_get_ip_addr(
        self, name: str, retries: int | None = None, delay: float | None = None
    ) -> str:
        """Poll the runtime until ``name`` has an address on this run's network."""
        cfg = get_settings().network
        retries = cfg.ip_retries if retries is None else retries
        delay = cfg.ip_retry_delay if delay is None else delay
        container = self._created(name)
        assert container.container_id is not None
        for _ in range(max(1, retries)):
            status = await self.runtime.inspect(container.container_id)
            if status is not None:
                address = status.ip_addresses.get(self.network_name)
                if address:
                    return address
            await asyncio.sleep(delay)
        raise ReadinessError(name, f"no address on {self.network_name} after {retries} attempts")

    async def wait_healthy(
        self, names: Iterable[str] | None = None, timeout: float | None = None
    ) -> None:
        """Wait until every named (default: every active) container reports healthy.

        A container without a health check counts as healthy once running.
        """
        names = list(names) if names is not None else self.active_names()
        interval = get_settings().network.health_poll_interval

        async def healthy(name: str) -> None:
            container = self._created(name)
            assert container.container_id is not None
            while True:
                status = await self.runtime.inspect(container.container_id)
                if status is None or not status.running:
                    raise HealthCheckError(name, "exited before becoming healthy")
                if status.health in (None, "healthy"):
                    return
                if status.health == "unhealthy":
                    raise HealthCheckError(name, "the runtime reported it unhealthy")
                await asyncio.sleep(interval)

        try:
            await asyncio.wait_for(asyncio.gather(*(healthy(n) for n in names)), timeout)
        except TimeoutError:
            raise HealthCheckError(
                ", ".join(names), f"not healthy within {timeout}s"
            ) from None

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def terminate_containers(self) -> None:
        """Stop and remove every container, leaving the network in place. Never raises."""
        if self._stop_reason is None:
            self._stop_reason = _StopReason(RunCancelledError, "terminated")
        await self._stop_all(self._stop_reason)
        removals = [
            self._force_remove(container)
            for container in self._containers.values()
            if container.container_id is not None
        ]
        await asyncio.gather(*removals)
        if self.state not in _FINAL_STATES:
            self.state = NetworkState.TERMINATED

    async def terminate(self) -> None:
        """Tear down containers and the network exactly once. Never raises."""
        if self._torn_down:
            return
        self._torn_down = True
        await self.terminate_containers()
        if self._network_active:
            try:
                await self.runtime.network_remove(self.network_name)
                self._network_active = False
            except OrchestratorError as exc:
                logger.warning(
                    "Network remove failed", network=self.network_name, error=str(exc)
                )
                self.teardown_errors.append(exc)
        logger.info(
            "Network torn down", network=self.network_name, errors=len(self.teardown_errors)
        )

    async def __aenter__(self) -> ContainerNetwork:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.terminate()

    def __del__(self) -> None:
        with contextlib.suppress(Exception):
            if self._torn_down:
                return
            leftovers = [c.name for c in self._containers.values() if c.container_id]
            if not leftovers and not self._network_active:
                return
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None and not loop.is_closed():
                task = loop.create_task(self.terminate())
                _background_teardowns.add(task)
                task.add_done_callback(_background_teardowns.discard)
                logger.warning(
                    "ContainerNetwork dropped without terminate(), tearing down",
                    network=self.network_name,
                )
            else:
                logger.warning(
                    "ContainerNetwork dropped without terminate(), resources left behind",
                    network=self.network_name,
                    containers=leftovers,
                )


async def run_container(
    spec: ContainerSpec,
    timeout: float,
    logs_dir: str | Path | None = None,
    *,
    dockerfile_write_dir: str | Path | None = None,
    debug: bool = True,
    runtime: RuntimeTransport | None = None,
) -> CommandResult:
    """Run one container in its own throwaway network and return its result.

    A non-zero exit status is returned, not raised; build, create, timeout and
    interrupt failures still raise RunFailedError.
    """
    spec = dataclasses.replace(spec, allow_unsuccessful=True, depends_on=[])
    network = ContainerNetwork(
        f"run-{safe_name(spec.name)}",
        [spec],
        dockerfile_write_dir=dockerfile_write_dir,
        logs_dir=logs_dir,
        debug=debug,
        log=logs_dir is not None,
        runtime=runtime,
    )
    outcome = await network.run(timeout)
    entry = outcome[spec.name]
    assert isinstance(entry, CommandResult)
    return entry
