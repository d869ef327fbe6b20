"""Environment descriptor and YAML loader.

The descriptor is the whole configuration surface of an environment: which
compose file to run, which container ports to publish, how to decide the
services are ready, and what to do on completion.  It is immutable once
constructed; custom behaviour is supplied as plain callables
(``wait_for_ready`` and ``get_environment``) rather than by subclassing.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Sequence, Union

import yaml

from src.compose_env.constants import (
    DEFAULT_DOCKER_HOST,
    DEFAULT_LAUNCH_ATTEMPTS,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_START_TIMEOUT,
    DEFAULT_STOP_TIMEOUT,
    DYNAMIC_PORT_START,
    MAX_PORT,
)
from src.compose_env.exceptions import ConfigurationError

if TYPE_CHECKING:
    from src.compose_env.discovery import Discovery

ReadyHook = Callable[["Discovery"], Union[Awaitable[None], None]]
EnvironmentHook = Callable[
    [str, Mapping[str, str], "Discovery"],
    Union[Mapping[str, str], Awaitable[Mapping[str, str]]],
]

_PROJECT_NAME_INVALID = re.compile(r"[^a-z0-9_-]+")


def normalize_project_name(name: str) -> str:
    """Coerce *name* into a valid docker compose project name.

    Compose accepts lowercase letters, digits, dashes and underscores, and
    the name must start with a letter or digit.
    """
    normalized = _PROJECT_NAME_INVALID.sub("-", name.lower()).strip("-_")
    if not normalized:
        raise ConfigurationError(f"Cannot derive a project name from {name!r}")
    return normalized


def _freeze_int_map(raw: Mapping[str, Sequence[int]] | None, label: str) -> Mapping[str, tuple[int, ...]]:
    frozen: dict[str, tuple[int, ...]] = {}
    for service, ports in (raw or {}).items():
        if isinstance(ports, int):
            ports = [ports]
        values = []
        for port in ports:
            try:
                value = int(port)
            except (TypeError, ValueError):
                raise ConfigurationError(
                    f"{label}: port {port!r} of service '{service}' is not an integer"
                ) from None
            if not 1 <= value <= MAX_PORT:
                raise ConfigurationError(
                    f"{label}: port {value} of service '{service}' is out of range"
                )
            if value not in values:
                values.append(value)
        frozen[str(service)] = tuple(values)
    return MappingProxyType(frozen)


def _freeze_markers(raw: Mapping[str, Sequence[str]] | None) -> Mapping[str, tuple[str, ...]]:
    frozen: dict[str, tuple[str, ...]] = {}
    for key, markers in (raw or {}).items():
        if isinstance(markers, str):
            markers = [markers]
        values = tuple(str(m) for m in markers if str(m))
        if values:
            frozen[str(key)] = values
    return MappingProxyType(frozen)


@dataclass(frozen=True)
class EnvironmentDescriptor:
    """Immutable description of a compose test environment.

    Attributes:
        compose_file_name: Compose file name or path; bare names are searched
            for in the start directory and each of its parents.
        ports: Declared container ports per service.
        project_name: Compose project name.  Empty means derived from the
            directory holding the compose file.
        start_timeout: Ceiling in seconds for preparing, launching and
            waiting for readiness combined.
        stop_timeout: Ceiling in seconds for teardown.
        down_on_complete: Tear the environment down when the run completes.
        generate_image_based_compose: Drop services that are built from
            source and keep only image-backed ones.
        docker_host: Host that published ports are reachable on.
        is_external_compose: The environment is launched and stopped by
            someone else; only wait for it.
        services_to_remove: Services removed from the compose definition.
        started_message_markers: Log lines to wait for.  Keys naming an
            active service match that service's log, any other key matches
            the combined project log.
        ordered_markers: Markers under one key must appear in the declared
            order.  When False they may appear in any order.
        wait_for_ports_listen: Wait until every declared port accepts TCP
            connections.
        try_find_existing_environment: Reuse a running environment with the
            same project name.  Implies deterministic port allocation.
        ignore_wait_for_port_listening: Ports excluded from the listen wait.
        port_range_start: First host port handed out by the allocator.
        poll_interval: Seconds between readiness checks.
        retain_on_failure: Leave the environment running for inspection when
            it does not become ready.
        launch_attempts: Launch attempts when the runtime reports a host
            port conflict.
        wait_for_ready: Extra readiness condition, awaited after the
            per-service checks within the remaining start timeout.
        get_environment: Resolves the final environment variables of a
            service; may read sibling endpoints from Discovery.
    """

    compose_file_name: str
    ports: Mapping[str, Sequence[int]]
    project_name: str = ""
    start_timeout: float = DEFAULT_START_TIMEOUT
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    down_on_complete: bool = True
    generate_image_based_compose: bool = True
    docker_host: str = DEFAULT_DOCKER_HOST
    is_external_compose: bool = False
    services_to_remove: Sequence[str] = ()
    started_message_markers: Mapping[str, Sequence[str]] = field(default_factory=dict)
    ordered_markers: bool = True
    wait_for_ports_listen: bool = True
    try_find_existing_environment: bool = False
    ignore_wait_for_port_listening: Mapping[str, Sequence[int]] = field(default_factory=dict)
    port_range_start: int = DYNAMIC_PORT_START
    poll_interval: float = DEFAULT_POLL_INTERVAL
    retain_on_failure: bool = False
    launch_attempts: int = DEFAULT_LAUNCH_ATTEMPTS
    wait_for_ready: ReadyHook | None = field(default=None, compare=False)
    get_environment: EnvironmentHook | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.compose_file_name:
            raise ConfigurationError("compose_file_name must not be empty")
        if self.start_timeout <= 0 or self.stop_timeout <= 0:
            raise ConfigurationError("start_timeout and stop_timeout must be positive")
        if self.poll_interval <= 0:
            raise ConfigurationError("poll_interval must be positive")
        if self.launch_attempts < 1:
            raise ConfigurationError("launch_attempts must be at least 1")
        if not 1 <= self.port_range_start <= MAX_PORT:
            raise ConfigurationError(f"port_range_start {self.port_range_start} is out of range")
        if self.is_external_compose and self.try_find_existing_environment:
            raise ConfigurationError(
                "is_external_compose and try_find_existing_environment are mutually exclusive"
            )
        if self.project_name:
            object.__setattr__(self, "project_name", normalize_project_name(self.project_name))

        object.__setattr__(self, "ports", _freeze_int_map(self.ports, "ports"))
        object.__setattr__(
            self,
            "ignore_wait_for_port_listening",
            _freeze_int_map(self.ignore_wait_for_port_listening, "ignore_wait_for_port_listening"),
        )
        object.__setattr__(
            self, "started_message_markers", _freeze_markers(self.started_message_markers)
        )
        if isinstance(self.services_to_remove, str):
            object.__setattr__(self, "services_to_remove", (self.services_to_remove,))
        else:
            object.__setattr__(
                self, "services_to_remove", tuple(dict.fromkeys(self.services_to_remove))
            )

    def resolve_project_name(self, compose_path: Path | None = None) -> str:
        """Return the project name, deriving it from *compose_path* if unset."""
        if self.project_name:
            return self.project_name
        if compose_path is None:
            raise ConfigurationError("project_name is empty and no compose file is known")
        return normalize_project_name(Path(compose_path).resolve().parent.name)

    def is_port_ignored(self, service: str, port: int) -> bool:
        return port in self.ignore_wait_for_port_listening.get(service, ())

    def declared_pairs(self) -> list[tuple[str, int]]:
        """All (service, container port) pairs in a stable, sorted order."""
        return sorted(
            (service, port) for service, ports in self.ports.items() for port in ports
        )


def load_descriptor(path: Path | str, **overrides: Any) -> EnvironmentDescriptor:
    """Load an environment descriptor from a YAML file.

    Unknown keys are silently ignored so that forward-compatible descriptor
    files keep working.  Hooks cannot be expressed in YAML; pass them (or
    any other field) as keyword *overrides*.

    Args:
        path: Path to the descriptor YAML.
        **overrides: Field values that take precedence over the file.

    Returns:
        The constructed descriptor.

    Raises:
        ConfigurationError: If the file is missing, unparsable, or invalid.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Descriptor file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw: Any = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Descriptor {path} is not valid YAML: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Descriptor {path} must be a mapping")

    valid = {f.name for f in fields(EnvironmentDescriptor)} - {"wait_for_ready", "get_environment"}
    data = {k: v for k, v in raw.items() if k in valid}
    data.update(overrides)

    compose_file_name = data.get("compose_file_name")
    if compose_file_name and not Path(compose_file_name).is_absolute():
        # Relative compose paths are searched from the descriptor's directory
        candidate = path.parent / compose_file_name
        if candidate.exists():
            data["compose_file_name"] = str(candidate)

    try:
        return EnvironmentDescriptor(**data)
    except TypeError as exc:
        raise ConfigurationError(f"Descriptor {path} is incomplete: {exc}") from exc
