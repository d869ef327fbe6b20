"""Compose definition transformer.

Rewrites a source compose definition into the effective definition that
is actually launched:

1. in image-based mode, services built from source are removed;
2. services listed in ``services_to_remove`` are removed;
3. declared container ports are published on allocator-reserved host ports;
4. each service's environment is resolved through the descriptor's
   ``get_environment`` hook, which may read sibling endpoints from Discovery.

The output needs no further lookups at launch time.
"""

from __future__ import annotations

import copy
import inspect
import logging
import os
from typing import TYPE_CHECKING, Any, Mapping

from src.compose_env.exceptions import ConfigurationError, NotYetResolvedError

if TYPE_CHECKING:
    from src.compose_env.descriptor import EnvironmentDescriptor
    from src.compose_env.discovery import Discovery
    from src.compose_env.protocols import PortAllocator

logger = logging.getLogger(__name__)


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ComposeTransformer:
    """Builds the effective compose definition for one run."""

    def __init__(
        self,
        descriptor: EnvironmentDescriptor,
        allocator: PortAllocator,
        discovery: Discovery,
        host: str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.allocator = allocator
        self.discovery = discovery
        self.host = host or descriptor.docker_host
        self.environ = os.environ if environ is None else environ
        self.stripped_services: list[str] = []
        self.removed_services: list[str] = []

    @property
    def excluded_services(self) -> set[str]:
        """Every service absent from the effective definition."""
        return set(self.stripped_services) | set(self.removed_services)

    async def transform(self, source: Mapping[str, Any]) -> dict[str, Any]:
        """Return the effective definition derived from *source*.

        *source* is not modified.  Port reservations are made on the
        allocator and every remaining service is published into Discovery.

        Raises:
            ConfigurationError: On references to unknown services, markers
                for removed services, or circular environment references.
            PortAllocationError: If a host port cannot be reserved.
        """
        definition: dict[str, Any] = copy.deepcopy(dict(source))
        services: dict[str, Any] = definition["services"]
        self._validate(services)

        self.stripped_services = []
        self.removed_services = []
        if self.descriptor.generate_image_based_compose:
            self.stripped_services = self._strip_build_services(services)
        self.removed_services = self._remove_excluded(services)
        self._prune_dependencies(services)
        self._check_markers()

        self._bind_ports(services)
        await self._resolve_environments(services)

        logger.info(
            "Effective compose definition has %d services: %s",
            len(services),
            ", ".join(services),
        )
        return definition

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self, services: Mapping[str, Any]) -> None:
        unknown_removed = [s for s in self.descriptor.services_to_remove if s not in services]
        if unknown_removed:
            raise ConfigurationError(
                "services_to_remove names services missing from the compose file: "
                + ", ".join(unknown_removed)
            )
        unknown_ports = [s for s in self.descriptor.ports if s not in services]
        if unknown_ports:
            raise ConfigurationError(
                "Ports are declared for services missing from the compose file: "
                + ", ".join(unknown_ports)
            )

    def _check_markers(self) -> None:
        conflicting = [
            key for key in self.descriptor.started_message_markers
            if key in self.removed_services
        ]
        if conflicting:
            raise ConfigurationError(
                "Readiness markers are declared for removed services: "
                + ", ".join(conflicting)
            )
        for key in self.descriptor.started_message_markers:
            if key in self.stripped_services:
                logger.warning(
                    "Ignoring readiness markers of '%s': it is built from source "
                    "and not part of the image-based definition",
                    key,
                )

    # ------------------------------------------------------------------
    # Steps 1-2: exclusion
    # ------------------------------------------------------------------

    def _strip_build_services(self, services: dict[str, Any]) -> list[str]:
        stripped = []
        for name in list(services):
            service = services[name]
            if not service.get("image"):
                del services[name]
                stripped.append(name)
            elif "build" in service:
                # Run the published image instead of rebuilding it
                del service["build"]
        if stripped:
            logger.info("Removed services without an image: %s", ", ".join(stripped))
        return stripped

    def _remove_excluded(self, services: dict[str, Any]) -> list[str]:
        removed = []
        for name in self.descriptor.services_to_remove:
            if name in services:
                del services[name]
                removed.append(name)
        if removed:
            logger.info("Removed excluded services: %s", ", ".join(removed))
        return removed

    def _prune_dependencies(self, services: dict[str, Any]) -> None:
        gone = self.excluded_services
        for service in services.values():
            depends_on = service.get("depends_on")
            if isinstance(depends_on, list):
                kept: Any = [d for d in depends_on if d not in gone]
            elif isinstance(depends_on, dict):
                kept = {k: v for k, v in depends_on.items() if k not in gone}
            else:
                continue
            if kept:
                service["depends_on"] = kept
            else:
                del service["depends_on"]

    # ------------------------------------------------------------------
    # Step 3: ports
    # ------------------------------------------------------------------

    def _bind_ports(self, services: dict[str, Any]) -> None:
        for name, service in services.items():
            # Fixed names and undeclared published ports collide across runs
            service.pop("container_name", None)
            declared = self.descriptor.ports.get(name, ())
            if not declared:
                if service.pop("ports", None):
                    logger.debug("Dropped undeclared published ports of '%s'", name)
                continue
            service["ports"] = [
                f"{self.allocator.reserve(name, port)}:{port}" for port in declared
            ]

    def _host_ports(self, name: str) -> dict[int, int]:
        return {
            port: self.allocator.reserve(name, port)
            for port in self.descriptor.ports.get(name, ())
        }

    # ------------------------------------------------------------------
    # Step 4: environment
    # ------------------------------------------------------------------

    def _normalize_environment(self, name: str, raw: Any) -> dict[str, str]:
        env: dict[str, str] = {}
        if raw is None:
            return env
        if isinstance(raw, list):
            for item in raw:
                key, sep, value = str(item).partition("=")
                if sep:
                    env[key] = value
                elif key in self.environ:
                    env[key] = self.environ[key]
        elif isinstance(raw, dict):
            for key, value in raw.items():
                if value is None:
                    if key in self.environ:
                        env[str(key)] = self.environ[key]
                else:
                    env[str(key)] = _env_value(value)
        else:
            raise ConfigurationError(f"Service '{name}' has a malformed 'environment' section")
        return env

    async def _call_resolver(self, name: str, existing: dict[str, str]) -> dict[str, str]:
        hook = self.descriptor.get_environment
        if hook is None:
            return existing
        result = hook(name, dict(existing), self.discovery)
        if inspect.isawaitable(result):
            result = await result
        if result is None:
            return {}
        return {str(k): _env_value(v) for k, v in result.items() if v is not None}

    async def _resolve_environments(self, services: dict[str, Any]) -> None:
        """Resolve environments in declaration order, deferring services
        whose hook asks Discovery for a sibling that is not resolved yet.
        """
        pending = list(services)
        while pending:
            deferred: dict[str, str] = {}
            for name in pending:
                service = services[name]
                existing = self._normalize_environment(name, service.get("environment"))
                try:
                    resolved = await self._call_resolver(name, existing)
                except NotYetResolvedError as exc:
                    deferred[name] = exc.service
                    continue
                if resolved:
                    service["environment"] = resolved
                else:
                    service.pop("environment", None)
                self.discovery.populate(name, self.host, self._host_ports(name))

            if len(deferred) == len(pending):
                details = ", ".join(f"{s} -> {t}" for s, t in deferred.items())
                raise ConfigurationError(
                    f"Circular or unresolvable environment references: {details}"
                )
            if deferred:
                logger.debug("Deferring environment resolution of: %s", ", ".join(deferred))
            pending = list(deferred)
