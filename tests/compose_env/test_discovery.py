"""Tests for the Discovery table."""

from __future__ import annotations

import asyncio

import pytest

from src.compose_env.discovery import Discovery
from src.compose_env.exceptions import (
    ComposeEnvError,
    NotYetResolvedError,
    ServiceNotFoundError,
)


@pytest.fixture
def discovery() -> Discovery:
    table = Discovery()
    table.populate("db", "localhost", {5432: 49152})
    return table


class TestDiscovery:
    def test_resolve_populated_service(self, discovery) -> None:
        endpoint = discovery.resolve("db")
        assert endpoint.host == "localhost"
        assert endpoint.port(5432) == 49152
        assert endpoint.address(5432) == "localhost:49152"
        assert endpoint.url(5432, "postgres") == "postgres://localhost:49152"

    def test_get_host_and_port(self, discovery) -> None:
        assert discovery.get_host("db") == "localhost"
        assert discovery.get_port("db", 5432) == 49152

    def test_undeclared_port(self, discovery) -> None:
        with pytest.raises(KeyError, match="5433"):
            discovery.get_port("db", 5433)

    def test_unknown_service_before_finalize_fails_fast(self, discovery) -> None:
        with pytest.raises(NotYetResolvedError) as exc_info:
            discovery.resolve("api")
        assert exc_info.value.service == "api"

    def test_unknown_service_after_finalize(self, discovery) -> None:
        discovery.finalize()
        with pytest.raises(ServiceNotFoundError):
            discovery.resolve("api")
        with pytest.raises(LookupError):
            discovery.resolve("api")

    def test_finalized_table_is_read_only(self, discovery) -> None:
        discovery.finalize()
        assert discovery.is_finalized
        with pytest.raises(ComposeEnvError):
            discovery.populate("api", "localhost", {8080: 49153})
        with pytest.raises(ComposeEnvError):
            discovery.clear()

    def test_endpoint_ports_are_immutable(self, discovery) -> None:
        endpoint = discovery.resolve("db")
        with pytest.raises(TypeError):
            endpoint.ports[5432] = 1  # type: ignore[index]

    def test_snapshot_and_membership(self, discovery) -> None:
        assert "db" in discovery
        assert "api" not in discovery
        assert len(discovery) == 1
        assert list(discovery.snapshot()) == ["db"]
        assert discovery.services == ["db"]

    @pytest.mark.asyncio
    async def test_wait_for_blocks_until_populated(self) -> None:
        table = Discovery()

        async def populate_later() -> None:
            await asyncio.sleep(0.05)
            table.populate("api", "localhost", {8080: 49153})

        task = asyncio.create_task(populate_later())
        endpoint = await table.wait_for("api", timeout=2.0)
        await task
        assert endpoint.port(8080) == 49153

    @pytest.mark.asyncio
    async def test_wait_for_times_out(self) -> None:
        table = Discovery()
        with pytest.raises(NotYetResolvedError):
            await table.wait_for("api", timeout=0.05)

    @pytest.mark.asyncio
    async def test_wait_for_released_by_finalize(self) -> None:
        table = Discovery()

        async def finalize_later() -> None:
            await asyncio.sleep(0.05)
            table.finalize()

        task = asyncio.create_task(finalize_later())
        with pytest.raises(ServiceNotFoundError):
            await table.wait_for("api", timeout=2.0)
        await task
