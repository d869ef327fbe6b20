"""Readiness waiting: TCP listen checks and log markers.

Each service moves ``pending -> port_confirmed -> marker_confirmed ->
ready``, skipping the steps that do not apply to it.  Services are
watched concurrently and joined under a single deadline; when it passes,
every in-flight check is cancelled and one
:class:`EnvironmentNotReadyError` reports the per-service verdicts.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Collection, Sequence

from src.compose_env.constants import DEFAULT_CONNECT_TIMEOUT
from src.compose_env.exceptions import EnvironmentNotReadyError
from src.compose_env.models import ReadinessReport, ReadinessState, ServiceReadiness

if TYPE_CHECKING:
    from src.compose_env.descriptor import EnvironmentDescriptor
    from src.compose_env.discovery import Discovery

logger = logging.getLogger(__name__)

LogReader = Callable[[str | None], Awaitable[str]]


def match_markers(text: str, markers: Sequence[str], ordered: bool = True) -> list[str]:
    """Return the markers found in *text*.

    With *ordered*, each marker must appear after the end of the previous
    match and matching stops at the first marker not found.
    """
    if not ordered:
        return [m for m in markers if m in text]
    seen: list[str] = []
    position = 0
    for marker in markers:
        index = text.find(marker, position)
        if index < 0:
            break
        seen.append(marker)
        position = index + len(marker)
    return seen


async def check_port(host: str, port: int, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> bool:
    """Return True if a TCP connection to *host*:*port* succeeds."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class ReadinessWaiter:
    """Waits until every active service reports ready."""

    def __init__(
        self,
        descriptor: EnvironmentDescriptor,
        discovery: Discovery,
        log_reader: LogReader | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        ignored_marker_keys: Collection[str] = (),
        log_services: Collection[str] = (),
    ) -> None:
        self.descriptor = descriptor
        self.discovery = discovery
        self.log_reader = log_reader
        self.connect_timeout = connect_timeout
        self.ignored_marker_keys = set(ignored_marker_keys)
        self.log_services = set(log_services)

    def _build_verdicts(self, services: Sequence[str]) -> list[tuple[ServiceReadiness, str | None]]:
        markers = self.descriptor.started_message_markers
        watch: list[tuple[ServiceReadiness, str | None]] = []
        for service in services:
            pending_ports: list[int] = []
            if self.descriptor.wait_for_ports_listen:
                pending_ports = [
                    p for p in self.descriptor.ports.get(service, ())
                    if not self.descriptor.is_port_ignored(service, p)
                ]
            verdict = ServiceReadiness(
                service=service,
                pending_ports=pending_ports,
                expected_markers=list(markers.get(service, ())),
            )
            watch.append((verdict, service))

        # Keys naming a running service without declared ports read that
        # service's log; any other key reads the combined log
        for key, values in markers.items():
            if key in services or key in self.ignored_marker_keys:
                continue
            target = key if key in self.log_services else None
            watch.append((ServiceReadiness(service=key, expected_markers=list(values)), target))
        return watch

    async def _wait_port(self, host: str, port: int) -> None:
        while not await check_port(host, port, self.connect_timeout):
            await asyncio.sleep(self.descriptor.poll_interval)

    async def _wait_markers(self, verdict: ServiceReadiness, log_target: str | None) -> None:
        while True:
            text = await self.log_reader(log_target)
            verdict.seen_markers = match_markers(
                text, verdict.expected_markers, self.descriptor.ordered_markers
            )
            if len(verdict.seen_markers) == len(verdict.expected_markers):
                return
            await asyncio.sleep(self.descriptor.poll_interval)

    async def _watch(self, verdict: ServiceReadiness, log_target: str | None) -> None:
        if verdict.pending_ports:
            endpoint = self.discovery.resolve(verdict.service)
            for port in list(verdict.pending_ports):
                await self._wait_port(endpoint.host, endpoint.port(port))
                verdict.pending_ports.remove(port)
                verdict.confirmed_ports.append(port)
            verdict.state = ReadinessState.PORT_CONFIRMED
            logger.debug("%s: ports listening", verdict.service)

        if verdict.expected_markers:
            if self.log_reader is None:
                logger.warning(
                    "Cannot read logs; skipping readiness markers of '%s'", verdict.service
                )
            else:
                await self._wait_markers(verdict, log_target)
                verdict.state = ReadinessState.MARKER_CONFIRMED
                logger.debug("%s: all markers seen", verdict.service)

        verdict.state = ReadinessState.READY
        logger.info("Service %s is ready", verdict.service)

    async def wait_until_ready(
        self,
        timeout: float,
        services: Sequence[str] | None = None,
    ) -> ReadinessReport:
        """Block until all services are ready or *timeout* elapses.

        Args:
            timeout: Seconds available for the whole wait, including the
                descriptor's ``wait_for_ready`` hook.
            services: Active services to watch; defaults to every service
                in Discovery.

        Returns:
            Report with every verdict ``ready``.

        Raises:
            EnvironmentNotReadyError: If anything is still pending at the
                deadline.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        services = list(self.discovery.services if services is None else services)
        watch = self._build_verdicts(services)
        verdicts = [v for v, _ in watch]
        logger.info(
            "Waiting up to %.1fs for %d services to become ready", timeout, len(services)
        )

        tasks = [asyncio.create_task(self._watch(v, target)) for v, target in watch]
        if tasks:
            try:
                done, pending = await asyncio.wait(
                    tasks, timeout=max(timeout, 0), return_when=asyncio.FIRST_EXCEPTION
                )
            finally:
                # Also reached when the caller cancels the wait itself
                for task in tasks:
                    if not task.done():
                        task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc is not None:
                    raise exc
            if pending:
                elapsed = loop.time() - started
                not_ready = ", ".join(v.service for v in verdicts if not v.is_ready)
                logger.error("Services not ready after %.1fs: %s", elapsed, not_ready)
                raise EnvironmentNotReadyError(verdicts, elapsed)

        await self._run_ready_hook(verdicts, timeout - (loop.time() - started), started)
        elapsed = loop.time() - started
        logger.info("All services ready after %.1fs", elapsed)
        return ReadinessReport(verdicts=verdicts, elapsed=elapsed)

    async def _run_ready_hook(
        self, verdicts: list[ServiceReadiness], remaining: float, started: float
    ) -> None:
        hook = self.descriptor.wait_for_ready
        if hook is None:
            return
        loop = asyncio.get_running_loop()
        if remaining <= 0:
            raise EnvironmentNotReadyError(
                verdicts, loop.time() - started, "no time left for wait_for_ready"
            )
        result = hook(self.discovery)
        if not inspect.isawaitable(result):
            return
        try:
            await asyncio.wait_for(result, remaining)
        except asyncio.TimeoutError:
            raise EnvironmentNotReadyError(
                verdicts, loop.time() - started, "wait_for_ready did not complete"
            ) from None
