"""Custom exceptions for compose test environments."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from src.compose_env.models import ServiceReadiness


class ComposeEnvError(Exception):
    """Base exception for all environment errors."""

    pass


class ConfigurationError(ComposeEnvError):
    """Raised for a malformed descriptor or compose definition.

    Always raised before any container is launched.
    """

    pass


class PortAllocationError(ComposeEnvError):
    """Raised when no host port can be reserved for a declared port."""

    def __init__(self, service: str, port: int, detail: str = "") -> None:
        self.service = service
        self.port = port
        message = f"Cannot allocate host port for '{service}:{port}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class LaunchError(ComposeEnvError):
    """Raised when the container runtime fails to bring the definition up."""

    def __init__(self, returncode: int, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"docker compose up failed with exit code {returncode}: {stderr.strip()}"
        )


class EnvironmentNotReadyError(ComposeEnvError):
    """Raised when services are not ready before the start timeout.

    Carries the per-service verdicts so callers can see which services
    were still pending and why.
    """

    def __init__(
        self,
        verdicts: Sequence[ServiceReadiness],
        elapsed: float,
        detail: str = "",
    ) -> None:
        self.verdicts = list(verdicts)
        self.elapsed = elapsed
        lines = [f"Environment not ready after {elapsed:.1f}s"]
        if detail:
            lines[0] = f"{lines[0]}: {detail}"
        for verdict in self.verdicts:
            if not verdict.is_ready:
                lines.append(f"  {verdict.describe()}")
        super().__init__("\n".join(lines))

    @property
    def pending_services(self) -> list[str]:
        """Names of the services that never became ready."""
        return [v.service for v in self.verdicts if not v.is_ready]


class TeardownError(ComposeEnvError):
    """Raised by the runtime when ``docker compose down`` fails."""

    def __init__(self, returncode: int, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"docker compose down failed with exit code {returncode}: {stderr.strip()}"
        )


class NotYetResolvedError(ComposeEnvError):
    """Raised when Discovery is read for a service it does not hold yet."""

    def __init__(self, service: str) -> None:
        self.service = service
        super().__init__(f"Service '{service}' is not resolved yet")


class ServiceNotFoundError(ComposeEnvError, LookupError):
    """Raised when a finalized Discovery table has no such service."""

    def __init__(self, service: str) -> None:
        self.service = service
        super().__init__(f"Service '{service}' is not part of the environment")
