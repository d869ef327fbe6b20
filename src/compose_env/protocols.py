"""Runtime-checkable protocols for the container runtime and port allocators."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from src.compose_env.models import PortReservation


@runtime_checkable
class ComposeRuntime(Protocol):
    """Protocol for the container runtime that runs a compose definition."""

    async def up(self, compose_file: Path, timeout: float, build: bool = False) -> None:
        """Bring the definition up in detached mode.

        Raises:
            LaunchError: If the runtime reports a failure or times out.
        """
        ...

    async def down(self, compose_file: Path | None, timeout: float) -> None:
        """Stop and remove the project's containers.

        Raises:
            TeardownError: If the runtime reports a failure or times out.
        """
        ...

    async def is_running(self) -> bool:
        """Return True if any container of the project is running."""
        ...

    async def get_port(self, service: str, container_port: int) -> int | None:
        """Return the host port published for a service port, if any."""
        ...

    async def logs(self, service: str | None = None) -> str:
        """Return the log output of one service, or the whole project."""
        ...


@runtime_checkable
class PortAllocator(Protocol):
    """Protocol for host port allocation strategies."""

    def reserve(self, service: str, container_port: int) -> int:
        """Reserve a host port for a declared container port.

        Raises:
            PortAllocationError: If no port can be reserved.
        """
        ...

    def release_all(self) -> None:
        """Forget every reservation made so far."""
        ...

    @property
    def reservations(self) -> list[PortReservation]:
        """Current reservations in allocation order."""
        ...
