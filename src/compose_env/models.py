"""Data models shared by the allocator, discovery, and readiness layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class RunMode(str, Enum):
    """How the environment relates to the current process."""
    UNDER_COMPOSE = "under_compose"
    EXTERNAL = "external"
    REUSED = "reused"
    OWNED = "owned"


class ReadinessState(str, Enum):
    """Progress of a single service through the readiness protocol."""
    PENDING = "pending"
    PORT_CONFIRMED = "port_confirmed"
    MARKER_CONFIRMED = "marker_confirmed"
    READY = "ready"


@dataclass(frozen=True)
class PortReservation:
    """Binding of a declared container port to an allocated host port."""
    service: str
    container_port: int
    host_port: int


@dataclass(frozen=True)
class ServiceEndpoint:
    """Resolved network location of one service."""
    service: str
    host: str
    ports: Mapping[int, int] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "ports", MappingProxyType(dict(self.ports)))

    def port(self, declared: int) -> int:
        """Return the resolved port for a declared container port.

        Raises:
            KeyError: If *declared* is not one of the service's ports.
        """
        try:
            return self.ports[declared]
        except KeyError:
            raise KeyError(
                f"Port {declared} is not declared for service '{self.service}'"
            ) from None

    def address(self, declared: int) -> str:
        return f"{self.host}:{self.port(declared)}"

    def url(self, declared: int, scheme: str = "http") -> str:
        return f"{scheme}://{self.address(declared)}"


@dataclass
class ServiceReadiness:
    """Mutable readiness record for one service during startup."""
    service: str
    state: ReadinessState = ReadinessState.PENDING
    pending_ports: list[int] = field(default_factory=list)
    confirmed_ports: list[int] = field(default_factory=list)
    expected_markers: list[str] = field(default_factory=list)
    seen_markers: list[str] = field(default_factory=list)

    @property
    def is_ready(self) -> bool:
        return self.state is ReadinessState.READY

    @property
    def missing_markers(self) -> list[str]:
        """Expected markers not yet seen, counting repeated markers separately."""
        unmatched = list(self.seen_markers)
        missing = []
        for marker in self.expected_markers:
            if marker in unmatched:
                unmatched.remove(marker)
            else:
                missing.append(marker)
        return missing

    def describe(self) -> str:
        """One-line diagnostic summary of this service's verdict."""
        parts = [f"{self.service}: {self.state.value}"]
        if self.pending_ports:
            parts.append(
                "ports not listening: " + ", ".join(str(p) for p in self.pending_ports)
            )
        missing = self.missing_markers
        if missing:
            parts.append("markers not seen: " + ", ".join(repr(m) for m in missing))
        return "; ".join(parts)


@dataclass
class ReadinessReport:
    """Aggregate outcome of a successful readiness wait."""
    verdicts: list[ServiceReadiness] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def all_ready(self) -> bool:
        return all(v.is_ready for v in self.verdicts)
