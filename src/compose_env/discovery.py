"""Service discovery table: service name to resolved host and ports."""

from __future__ import annotations

import asyncio
import logging
from types import MappingProxyType
from typing import Mapping

from src.compose_env.exceptions import (
    ComposeEnvError,
    NotYetResolvedError,
    ServiceNotFoundError,
)
from src.compose_env.models import ServiceEndpoint

logger = logging.getLogger(__name__)


class Discovery:
    """Lookup table of resolved service endpoints.

    Populated incrementally by the orchestrator during startup and frozen
    with :meth:`finalize` once the environment is ready.  Before
    finalization, :meth:`resolve` fails fast with
    :class:`NotYetResolvedError` for unknown services and :meth:`wait_for`
    blocks until the service is populated.  After finalization the table
    is read-only.
    """

    def __init__(self) -> None:
        self._entries: dict[str, ServiceEndpoint] = {}
        self._finalized = False
        self._waiters: dict[str, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Writes (orchestrator only)
    # ------------------------------------------------------------------

    def populate(self, service: str, host: str, ports: Mapping[int, int]) -> ServiceEndpoint:
        """Record (or replace) the endpoint of *service*.

        Raises:
            ComposeEnvError: If the table is already finalized.
        """
        if self._finalized:
            raise ComposeEnvError(
                f"Discovery is finalized; cannot populate service '{service}'"
            )
        endpoint = ServiceEndpoint(service=service, host=host, ports=ports)
        self._entries[service] = endpoint
        logger.debug("Discovery: %s -> %s %s", service, host, dict(ports))
        waiter = self._waiters.pop(service, None)
        if waiter is not None:
            waiter.set()
        return endpoint

    def finalize(self) -> None:
        self._finalized = True
        # Nothing else can arrive; release blocked readers so they fail fast
        for waiter in self._waiters.values():
            waiter.set()
        self._waiters.clear()

    def clear(self) -> None:
        """Drop every entry so the table can be rebuilt (not after finalize)."""
        if self._finalized:
            raise ComposeEnvError("Discovery is finalized; cannot clear it")
        self._entries.clear()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    @property
    def services(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, service: object) -> bool:
        return service in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def snapshot(self) -> Mapping[str, ServiceEndpoint]:
        """Read-only view of the current entries."""
        return MappingProxyType(dict(self._entries))

    def resolve(self, service: str) -> ServiceEndpoint:
        """Return the endpoint of *service* without waiting.

        Raises:
            NotYetResolvedError: If the table is still being built and the
                service is not in it yet.
            ServiceNotFoundError: If the table is finalized and the service
                is not part of the environment.
        """
        endpoint = self._entries.get(service)
        if endpoint is not None:
            return endpoint
        if self._finalized:
            raise ServiceNotFoundError(service)
        raise NotYetResolvedError(service)

    def get_host(self, service: str) -> str:
        return self.resolve(service).host

    def get_port(self, service: str, container_port: int) -> int:
        return self.resolve(service).port(container_port)

    async def wait_for(self, service: str, timeout: float) -> ServiceEndpoint:
        """Block until *service* is populated or *timeout* elapses.

        Raises:
            NotYetResolvedError: If the service is still unknown after
                *timeout* seconds.
            ServiceNotFoundError: If the table is finalized without it.
        """
        if service in self._entries or self._finalized:
            return self.resolve(service)
        waiter = self._waiters.setdefault(service, asyncio.Event())
        try:
            await asyncio.wait_for(waiter.wait(), timeout)
        except asyncio.TimeoutError:
            raise NotYetResolvedError(service) from None
        return self.resolve(service)
