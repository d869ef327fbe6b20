"""Shared fixtures for compose environment tests."""

from __future__ import annotations

import asyncio
import socket
from pathlib import Path
from typing import Any, Callable

import pytest
import yaml

from src.compose_env.descriptor import EnvironmentDescriptor
from src.compose_env.exceptions import TeardownError

SAMPLE_COMPOSE: dict[str, Any] = {
    "services": {
        "db": {
            "image": "postgres:16-alpine",
            "container_name": "fixed-db",
            "ports": ["5432:5432"],
            "environment": {"POSTGRES_PASSWORD": "secret"},
        },
        "api": {
            "image": "example/api:1.0",
            "build": "./api",
            "depends_on": ["db", "app"],
            "environment": ["LOG_LEVEL=debug", "HOME_DIR"],
        },
        "app": {
            "build": ".",
            "depends_on": {"db": {"condition": "service_started"}},
        },
        "cache": {"image": "redis:7-alpine", "ports": ["6379"]},
    },
}


class FakeRuntime:
    """In-memory stand-in for ``docker compose``.

    ``up`` records the effective definition and, when *listen* is set,
    opens a loopback listener on every published host port so that port
    readiness can be confirmed for real.
    """

    def __init__(
        self,
        running: bool = False,
        logs: dict[str | None, str] | None = None,
        up_errors: list[Exception] | None = None,
        down_error: Exception | None = None,
        published: dict[tuple[str, int], int] | None = None,
        listen: bool = False,
    ) -> None:
        self.running = running
        self.log_text = logs or {}
        self.up_errors = list(up_errors or [])
        self.down_error = down_error
        self.published = published or {}
        self.listen = listen
        self.up_calls: list[dict[str, Any]] = []
        self.down_calls: list[Path | None] = []
        self.definitions: list[dict[str, Any]] = []
        self.log_requests: list[str | None] = []
        self._servers: list[asyncio.AbstractServer] = []

    async def up(self, compose_file: Path, timeout: float, build: bool = False) -> None:
        self.up_calls.append({"file": compose_file, "timeout": timeout, "build": build})
        definition = yaml.safe_load(Path(compose_file).read_text(encoding="utf-8"))
        self.definitions.append(definition)
        if self.up_errors:
            raise self.up_errors.pop(0)
        self.running = True
        if self.listen:
            for service in definition["services"].values():
                for mapping in service.get("ports", []):
                    host_port = int(str(mapping).split(":")[0])
                    server = await asyncio.start_server(
                        _close_immediately, "127.0.0.1", host_port
                    )
                    self._servers.append(server)

    async def down(self, compose_file: Path | None, timeout: float) -> None:
        self.down_calls.append(compose_file)
        if self.down_error is not None:
            raise self.down_error
        self.running = False
        await self.close()

    async def is_running(self) -> bool:
        return self.running

    async def get_port(self, service: str, container_port: int) -> int | None:
        return self.published.get((service, container_port))

    async def logs(self, service: str | None = None) -> str:
        self.log_requests.append(service)
        if service is None:
            return "\n".join(self.log_text.values())
        return self.log_text.get(service, "")

    async def close(self) -> None:
        for server in self._servers:
            server.close()
            await server.wait_closed()
        self._servers.clear()


async def _close_immediately(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    writer.close()


def unused_port() -> int:
    """A loopback port nothing listens on (bound once, then released)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def compose_file(tmp_path: Path) -> Path:
    path = tmp_path / "docker-compose.yml"
    path.write_text(yaml.safe_dump(SAMPLE_COMPOSE, sort_keys=False), encoding="utf-8")
    return path


@pytest.fixture
def make_descriptor(compose_file: Path) -> Callable[..., EnvironmentDescriptor]:
    """Factory for descriptors over the sample compose file."""

    def _make(**overrides: Any) -> EnvironmentDescriptor:
        values: dict[str, Any] = {
            "compose_file_name": str(compose_file),
            "ports": {"db": [5432], "api": [8080]},
            "project_name": "sample",
            "docker_host": "127.0.0.1",
            "start_timeout": 5.0,
            "poll_interval": 0.05,
        }
        values.update(overrides)
        return EnvironmentDescriptor(**values)

    return _make


@pytest.fixture
async def fake_runtime():
    runtime = FakeRuntime()
    yield runtime
    await runtime.close()


@pytest.fixture
def teardown_failure() -> TeardownError:
    return TeardownError(1, "error while removing network")
