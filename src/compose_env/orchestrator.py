"""Environment orchestration.

:class:`ComposeEnvironment` is the handle a test framework holds around a
test run.  ``start()`` detects the run mode, prepares and launches the
compose definition when the environment is owned, waits for readiness and
returns the finalized :class:`Discovery`; ``stop()`` tears down what was
launched.  Both are idempotent.

Run modes:

* ``under_compose`` -- the tests run as a compose service themselves
  (``UNDER_COMPOSE`` is set); services are reached by service name on
  their declared ports and nothing is launched.
* ``external`` -- someone else manages the environment; bindings are read
  from the runtime.
* ``reused`` -- ``try_find_existing_environment`` found the project
  running; deterministic ports are recomputed and nothing is launched or
  torn down.
* ``owned`` -- the full prepare, launch, wait sequence, torn down on
  completion unless ``down_on_complete`` is False.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Iterable, Mapping

from src.compose_env.compose_file import (
    effective_compose_path,
    find_compose_file,
    load_compose,
    write_compose,
)
from src.compose_env.constants import (
    PORT_CONFLICT_MARKERS,
    STATE_READY,
    STATE_TORN_DOWN,
)
from src.compose_env.descriptor import EnvironmentDescriptor
from src.compose_env.discovery import Discovery
from src.compose_env.exceptions import (
    ComposeEnvError,
    EnvironmentNotReadyError,
    LaunchError,
)
from src.compose_env.logging import run_id_var
from src.compose_env.models import ReadinessReport, RunMode, ServiceReadiness
from src.compose_env.ports import create_allocator
from src.compose_env.protocols import ComposeRuntime, PortAllocator
from src.compose_env.readiness import LogReader, ReadinessWaiter
from src.compose_env.runtime import TIMED_OUT_RETURNCODE, DockerComposeRuntime
from src.compose_env.settings import RuntimeSettings
from src.compose_env.state_machine import STARTABLE_STATES, create_environment_machine
from src.compose_env.transformer import ComposeTransformer

logger = logging.getLogger(__name__)


def is_port_conflict(exc: LaunchError) -> bool:
    """True if a launch failed because a host port was taken meanwhile."""
    text = exc.stderr.lower()
    return any(marker in text for marker in PORT_CONFLICT_MARKERS)


class ComposeEnvironment:
    """Start, expose and stop one compose test environment.

    Args:
        descriptor: The environment description.
        runtime: Container runtime; defaults to :class:`DockerComposeRuntime`
            for the resolved project.
        settings: Process settings used for run-mode detection; defaults to
            reading the real process environment.
        allocator: Port allocator; defaults to the strategy selected by
            :func:`create_allocator`.
        search_from: Directory the compose file search starts in.
        environ: Variables used to fill bare ``environment`` keys of the
            compose file; defaults to ``os.environ``.
    """

    state: str

    def __init__(
        self,
        descriptor: EnvironmentDescriptor,
        runtime: ComposeRuntime | None = None,
        settings: RuntimeSettings | None = None,
        allocator: PortAllocator | None = None,
        search_from: Path | str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.settings = settings if settings is not None else RuntimeSettings()
        self.allocator = allocator if allocator is not None else create_allocator(descriptor)
        self.search_from = search_from
        self.environ = environ
        self.mode: RunMode | None = None
        self.project_name: str = descriptor.project_name
        self.compose_file: Path | None = None
        self.effective_compose_file: Path | None = None
        self.readiness: ReadinessReport | None = None
        self._runtime = runtime
        self._discovery = Discovery()
        self._transformer: ComposeTransformer | None = None
        self._compose_services: list[str] = []
        self._launched = False
        self.machine = create_environment_machine(self)

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def discovery(self) -> Discovery:
        """The finalized Discovery table.

        Raises:
            ComposeEnvError: If the environment is not ready.
        """
        if not self._discovery.is_finalized:
            raise ComposeEnvError("Environment is not ready; call start() first")
        return self._discovery

    @property
    def owns_environment(self) -> bool:
        return self.mode is RunMode.OWNED

    async def __aenter__(self) -> Discovery:
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def start(self) -> Discovery:
        """Bring the environment to ready and return its Discovery table.

        Calling ``start()`` on a ready environment returns the same table.

        Raises:
            ConfigurationError: Malformed descriptor or compose file.
            PortAllocationError: No host port could be reserved.
            LaunchError: The runtime failed to launch the definition.
            EnvironmentNotReadyError: ``start_timeout`` elapsed first.
        """
        if self.state == STATE_READY:
            return self._discovery
        if self.state not in STARTABLE_STATES:
            raise ComposeEnvError(f"Cannot start an environment in state '{self.state}'")

        token = run_id_var.set(uuid.uuid4().hex)
        try:
            await self.detect()
            deadline = asyncio.get_running_loop().time() + self.descriptor.start_timeout
            try:
                await self._start(deadline)
            except (Exception, asyncio.CancelledError) as exc:
                await self._handle_startup_failure(exc)
                raise
            await self.mark_ready()
            self._discovery.finalize()
            logger.info(
                "Environment %s ready (%s): %s",
                self.project_name or "<compose>",
                self.mode.value if self.mode else "?",
                ", ".join(self._discovery.services),
            )
            return self._discovery
        finally:
            run_id_var.reset(token)

    async def stop(self) -> bool:
        """Tear down the environment if this handle launched it.

        Teardown is skipped for external, under-compose and reused
        environments, and when ``down_on_complete`` is False.  A start that was
        interrupted (for example cancelled) is treated as a failed start and
        whatever it launched is removed.  Failures are logged and reported
        through the return value, never raised.

        Returns:
            False if ``docker compose down`` failed, True otherwise.
        """
        if self.state == STATE_TORN_DOWN:
            return True
        if "fail_startup" in self.machine.get_triggers(self.state):
            # start() never got to record its outcome; treat it as a failed start
            await self._handle_startup_failure(
                ComposeEnvError(f"stopped while in state '{self.state}'")
            )

        if self._launched and self.owns_environment and self.descriptor.down_on_complete:
            try:
                await self._runtime_or_default().down(
                    self.effective_compose_file, self.descriptor.stop_timeout
                )
            except ComposeEnvError as exc:
                logger.error("Teardown of %s failed: %s", self.project_name, exc)
                await self.fail_teardown()
                return False
            self._launched = False
            self._remove_effective_file()
        elif self._launched:
            logger.info(
                "Leaving project %s running (down_on_complete is off)", self.project_name
            )
        elif self.mode is not None and not self.owns_environment:
            logger.debug("Not tearing down %s environment", self.mode.value)

        self.allocator.release_all()
        await self.tear_down()
        return True

    # ------------------------------------------------------------------
    # Startup pipeline
    # ------------------------------------------------------------------

    async def _start(self, deadline: float) -> None:
        self.mode = await self._detect_mode()
        logger.info("Run mode: %s", self.mode.value)

        if self.mode is RunMode.UNDER_COMPOSE:
            self._populate_under_compose()
            await self.await_ready()
            await self._wait_ready(deadline, log_reader=None)
            return

        runtime = self._runtime_or_default()
        if self.mode is RunMode.EXTERNAL:
            await self._populate_from_runtime(runtime)
            removed = set(self.descriptor.services_to_remove)
            self._compose_services = [
                s for s in load_compose(self._require_compose_file())["services"]
                if s not in removed
            ]
        elif self.mode is RunMode.REUSED:
            await self.prepare()
            await self._prepare(deadline)
        else:
            await self._prepare_and_launch(runtime, deadline)

        await self.await_ready()
        await self._wait_ready(deadline, log_reader=runtime.logs)

    async def _detect_mode(self) -> RunMode:
        if self.settings.is_under_compose:
            return RunMode.UNDER_COMPOSE

        self._locate()
        if self.descriptor.is_external_compose:
            return RunMode.EXTERNAL
        if self.descriptor.try_find_existing_environment:
            if await self._runtime_or_default().is_running():
                logger.info("Reusing running environment %s", self.project_name)
                return RunMode.REUSED
            logger.info("No running environment %s found; launching one", self.project_name)
        return RunMode.OWNED

    def _locate(self) -> None:
        self.compose_file = find_compose_file(self.descriptor.compose_file_name, self.search_from)
        self.project_name = self.descriptor.resolve_project_name(self.compose_file)
        logger.debug("Compose file %s, project %s", self.compose_file, self.project_name)

    def _runtime_or_default(self) -> ComposeRuntime:
        if self._runtime is None:
            if not self.project_name:
                self._locate()
            self._runtime = DockerComposeRuntime(
                self.project_name, docker_binary=self.settings.docker_binary
            )
        return self._runtime

    def _active_declared_ports(self) -> dict[str, tuple[int, ...]]:
        removed = set(self.descriptor.services_to_remove)
        return {s: p for s, p in self.descriptor.ports.items() if s not in removed}

    def _populate_under_compose(self) -> None:
        # Inside the compose network services are reached by name on their own ports
        for service, ports in self._active_declared_ports().items():
            self._discovery.populate(service, service, {p: p for p in ports})

    async def _populate_from_runtime(self, runtime: ComposeRuntime) -> None:
        for service, ports in self._active_declared_ports().items():
            bindings: dict[int, int] = {}
            for port in ports:
                published = await runtime.get_port(service, port)
                bindings[port] = published if published is not None else port
            self._discovery.populate(service, self.descriptor.docker_host, bindings)

    def _require_compose_file(self) -> Path:
        if self.compose_file is None:
            raise ComposeEnvError("No compose file has been located for this environment")
        return self.compose_file

    def _timed_out(self, phase: str, services: Iterable[str]) -> EnvironmentNotReadyError:
        verdicts = [ServiceReadiness(service=s) for s in services]
        return EnvironmentNotReadyError(
            verdicts, self.descriptor.start_timeout, f"timed out while {phase}"
        )

    async def _prepare(self, deadline: float) -> dict[str, Any]:
        source = load_compose(self._require_compose_file())
        self._transformer = ComposeTransformer(
            self.descriptor, self.allocator, self._discovery, environ=self.environ
        )
        try:
            definition = await asyncio.wait_for(
                self._transformer.transform(source), self._remaining(deadline)
            )
        except asyncio.TimeoutError:
            raise self._timed_out("preparing", self._active_declared_ports()) from None
        self._compose_services = list(definition["services"])
        return definition

    async def _prepare_and_launch(self, runtime: ComposeRuntime, deadline: float) -> None:
        attempts = 1 if self.descriptor.try_find_existing_environment else self.descriptor.launch_attempts
        for attempt in range(1, attempts + 1):
            await self.prepare()
            definition = await self._prepare(deadline)
            await self.launch()
            try:
                await self._launch(runtime, definition, deadline)
                return
            except LaunchError as exc:
                if attempt >= attempts or not is_port_conflict(exc):
                    raise
                logger.warning(
                    "Host port conflict on launch attempt %d/%d; reallocating ports",
                    attempt,
                    attempts,
                )
                await self._cleanup(runtime)
                self.allocator.release_all()
                self._discovery.clear()

    async def _launch(
        self, runtime: ComposeRuntime, definition: dict[str, Any], deadline: float
    ) -> None:
        self.effective_compose_file = write_compose(
            definition, effective_compose_path(self._require_compose_file(), self.project_name)
        )
        if isinstance(runtime, DockerComposeRuntime):
            runtime.compose_file = self.effective_compose_file
        # Containers may exist even if `up` fails part way
        self._launched = True
        try:
            await runtime.up(
                self.effective_compose_file,
                timeout=self._remaining(deadline),
                build=not self.descriptor.generate_image_based_compose,
            )
        except LaunchError as exc:
            if exc.returncode == TIMED_OUT_RETURNCODE or self._remaining(deadline) <= 0:
                raise self._timed_out("launching", definition["services"]) from exc
            raise

    async def _wait_ready(self, deadline: float, log_reader: LogReader | None) -> None:
        ignored = self._transformer.stripped_services if self._transformer else ()
        waiter = ReadinessWaiter(
            self.descriptor,
            self._discovery,
            log_reader=log_reader,
            ignored_marker_keys=ignored,
            log_services=self._compose_services,
        )
        self.readiness = await waiter.wait_until_ready(
            self._remaining(deadline), services=self._discovery.services
        )

    def _remaining(self, deadline: float) -> float:
        return max(deadline - asyncio.get_running_loop().time(), 0.0)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _handle_startup_failure(self, exc: BaseException) -> None:
        if isinstance(exc, asyncio.CancelledError):
            logger.error("Environment startup cancelled")
        else:
            logger.error("Environment startup failed: %s", exc)
        if "fail_startup" in self.machine.get_triggers(self.state):
            await self.fail_startup()
        if not self._launched:
            return
        if isinstance(exc, EnvironmentNotReadyError) and self.descriptor.retain_on_failure:
            logger.warning(
                "Leaving project %s running for inspection (retain_on_failure)",
                self.project_name,
            )
            return
        await self._cleanup(self._runtime_or_default())

    async def _cleanup(self, runtime: ComposeRuntime) -> None:
        """Best-effort ``down``; errors are logged, never raised."""
        try:
            await runtime.down(self.effective_compose_file, self.descriptor.stop_timeout)
        except ComposeEnvError as exc:
            logger.error("Cleanup of %s failed: %s", self.project_name, exc)
            return
        self._launched = False
        self._remove_effective_file()

    def _remove_effective_file(self) -> None:
        if self.effective_compose_file is not None:
            self.effective_compose_file.unlink(missing_ok=True)
