"""Tests for ComposeTransformer."""

from __future__ import annotations

import copy
from unittest.mock import patch

import pytest

from src.compose_env.discovery import Discovery
from src.compose_env.exceptions import ConfigurationError
from src.compose_env.ports import FreePortAllocator, SerialPortAllocator
from src.compose_env.transformer import ComposeTransformer
from tests.compose_env.conftest import SAMPLE_COMPOSE


@pytest.fixture(autouse=True)
def _all_ports_bindable():
    with patch("src.compose_env.ports.is_port_bindable", return_value=True):
        yield


def _transformer(descriptor, environ=None) -> ComposeTransformer:
    return ComposeTransformer(
        descriptor,
        FreePortAllocator(descriptor.port_range_start),
        Discovery(),
        environ=environ if environ is not None else {"HOME_DIR": "/home/test"},
    )


class TestExclusion:
    """Steps 1 and 2: which services survive."""

    @pytest.mark.asyncio
    async def test_image_based_keeps_only_image_services(self, make_descriptor) -> None:
        transformer = _transformer(make_descriptor())
        result = await transformer.transform(SAMPLE_COMPOSE)
        assert set(result["services"]) == {"db", "api", "cache"}
        assert transformer.stripped_services == ["app"]
        # api has an image, so it runs that image instead of building
        assert "build" not in result["services"]["api"]

    @pytest.mark.asyncio
    async def test_image_and_build_service_scenario(self, make_descriptor) -> None:
        source = {
            "services": {
                "queue": {"image": "rabbitmq:3"},
                "worker": {"build": "./worker"},
            }
        }
        descriptor = make_descriptor(ports={"queue": [5672], "worker": [9000]})
        transformer = _transformer(descriptor)
        result = await transformer.transform(source)
        assert list(result["services"]) == ["queue"]
        assert "worker" not in transformer.discovery

    @pytest.mark.asyncio
    async def test_build_services_kept_when_not_image_based(self, make_descriptor) -> None:
        transformer = _transformer(make_descriptor(generate_image_based_compose=False))
        result = await transformer.transform(SAMPLE_COMPOSE)
        assert set(result["services"]) == {"db", "api", "app", "cache"}
        assert result["services"]["api"]["build"] == "./api"

    @pytest.mark.asyncio
    async def test_removed_service_absent_everywhere(self, make_descriptor) -> None:
        transformer = _transformer(make_descriptor(services_to_remove=["cache"]))
        result = await transformer.transform(SAMPLE_COMPOSE)
        assert "cache" not in result["services"]
        assert "cache" not in transformer.discovery
        assert transformer.removed_services == ["cache"]

    @pytest.mark.asyncio
    async def test_depends_on_pruned(self, make_descriptor) -> None:
        transformer = _transformer(make_descriptor(services_to_remove=["db"], ports={"api": [8080]}))
        result = await transformer.transform(SAMPLE_COMPOSE)
        assert "depends_on" not in result["services"]["api"]

        transformer = _transformer(make_descriptor())
        result = await transformer.transform(SAMPLE_COMPOSE)
        assert result["services"]["api"]["depends_on"] == ["db"]

    @pytest.mark.asyncio
    async def test_source_not_modified(self, make_descriptor) -> None:
        source = copy.deepcopy(SAMPLE_COMPOSE)
        await _transformer(make_descriptor()).transform(source)
        assert source == SAMPLE_COMPOSE

    @pytest.mark.asyncio
    async def test_unknown_removed_service(self, make_descriptor) -> None:
        transformer = _transformer(make_descriptor(services_to_remove=["nope"]))
        with pytest.raises(ConfigurationError, match="nope"):
            await transformer.transform(SAMPLE_COMPOSE)

    @pytest.mark.asyncio
    async def test_ports_for_unknown_service(self, make_descriptor) -> None:
        transformer = _transformer(make_descriptor(ports={"ghost": [1234]}))
        with pytest.raises(ConfigurationError, match="ghost"):
            await transformer.transform(SAMPLE_COMPOSE)

    @pytest.mark.asyncio
    async def test_markers_for_removed_service(self, make_descriptor) -> None:
        descriptor = make_descriptor(
            services_to_remove=["cache"],
            started_message_markers={"cache": ["Ready to accept connections"]},
        )
        with pytest.raises(ConfigurationError, match="cache"):
            await _transformer(descriptor).transform(SAMPLE_COMPOSE)


class TestPorts:
    """Step 3: published port substitution."""

    @pytest.mark.asyncio
    async def test_declared_ports_published_on_reserved_host_ports(self, make_descriptor) -> None:
        descriptor = make_descriptor(ports={"db": [5432], "api": [8080, 8081]})
        transformer = _transformer(descriptor)
        result = await transformer.transform(SAMPLE_COMPOSE)

        reservations = {
            (r.service, r.container_port): r.host_port
            for r in transformer.allocator.reservations
        }
        assert result["services"]["db"]["ports"] == [f"{reservations[('db', 5432)]}:5432"]
        assert result["services"]["api"]["ports"] == [
            f"{reservations[('api', 8080)]}:8080",
            f"{reservations[('api', 8081)]}:8081",
        ]
        assert len(set(reservations.values())) == 3

    @pytest.mark.asyncio
    async def test_undeclared_ports_and_container_names_dropped(self, make_descriptor) -> None:
        result = await _transformer(make_descriptor()).transform(SAMPLE_COMPOSE)
        assert "ports" not in result["services"]["cache"]
        assert "container_name" not in result["services"]["db"]

    @pytest.mark.asyncio
    async def test_discovery_matches_reservations(self, make_descriptor) -> None:
        transformer = _transformer(make_descriptor())
        await transformer.transform(SAMPLE_COMPOSE)
        for reservation in transformer.allocator.reservations:
            endpoint = transformer.discovery.resolve(reservation.service)
            assert endpoint.host == "127.0.0.1"
            assert endpoint.port(reservation.container_port) == reservation.host_port
        assert transformer.discovery.resolve("cache").ports == {}

    @pytest.mark.asyncio
    async def test_serial_ports_are_repeatable(self, make_descriptor) -> None:
        descriptor = make_descriptor(try_find_existing_environment=True)
        results = []
        for _ in range(2):
            allocator = SerialPortAllocator(descriptor.port_range_start, descriptor.declared_pairs())
            transformer = ComposeTransformer(descriptor, allocator, Discovery(), environ={})
            results.append(await transformer.transform(SAMPLE_COMPOSE))
        assert results[0]["services"]["db"]["ports"] == results[1]["services"]["db"]["ports"]
        assert results[0]["services"]["api"]["ports"] == results[1]["services"]["api"]["ports"]


class TestEnvironment:
    """Step 4: environment overrides."""

    @pytest.mark.asyncio
    async def test_list_environment_normalised(self, make_descriptor) -> None:
        result = await _transformer(make_descriptor()).transform(SAMPLE_COMPOSE)
        assert result["services"]["api"]["environment"] == {
            "LOG_LEVEL": "debug",
            "HOME_DIR": "/home/test",
        }

    @pytest.mark.asyncio
    async def test_unset_bare_key_dropped(self, make_descriptor) -> None:
        result = await _transformer(make_descriptor(), environ={}).transform(SAMPLE_COMPOSE)
        assert result["services"]["api"]["environment"] == {"LOG_LEVEL": "debug"}

    @pytest.mark.asyncio
    async def test_override_references_sibling_port(self, make_descriptor) -> None:
        def get_environment(service, existing, discovery):
            if service != "api":
                return existing
            db = discovery.resolve("db")
            return {**existing, "DB_HOST": db.host, "DB_PORT": db.port(5432)}

        descriptor = make_descriptor(get_environment=get_environment)
        transformer = _transformer(descriptor)
        result = await transformer.transform(SAMPLE_COMPOSE)

        db_port = transformer.discovery.get_port("db", 5432)
        env = result["services"]["api"]["environment"]
        assert env["DB_PORT"] == str(db_port)
        assert env["DB_HOST"] == "127.0.0.1"

    @pytest.mark.asyncio
    async def test_async_override_declared_before_dependency(self, make_descriptor) -> None:
        # api is declared before db here, so its first resolution is deferred
        source = {
            "services": {
                "api": {"image": "example/api:1.0"},
                "db": {"image": "postgres:16-alpine"},
            }
        }
        calls: list[str] = []

        async def get_environment(service, existing, discovery):
            calls.append(service)
            if service == "api":
                return {"DATABASE_URL": f"postgres://db:{discovery.get_port('db', 5432)}/app"}
            return existing

        transformer = _transformer(make_descriptor(get_environment=get_environment))
        result = await transformer.transform(source)
        db_port = transformer.discovery.get_port("db", 5432)
        assert result["services"]["api"]["environment"] == {
            "DATABASE_URL": f"postgres://db:{db_port}/app"
        }
        assert calls == ["api", "db", "api"]

    @pytest.mark.asyncio
    async def test_circular_references_rejected(self, make_descriptor) -> None:
        source = {
            "services": {
                "api": {"image": "example/api:1.0"},
                "db": {"image": "postgres:16-alpine"},
            }
        }

        def get_environment(service, existing, discovery):
            other = "db" if service == "api" else "api"
            discovery.resolve(other)
            return existing

        transformer = _transformer(make_descriptor(get_environment=get_environment))
        with pytest.raises(ConfigurationError, match="Circular"):
            await transformer.transform(source)

    @pytest.mark.asyncio
    async def test_empty_override_removes_environment(self, make_descriptor) -> None:
        transformer = _transformer(make_descriptor(get_environment=lambda s, e, d: {}))
        result = await transformer.transform(SAMPLE_COMPOSE)
        assert "environment" not in result["services"]["db"]

    @pytest.mark.asyncio
    async def test_boolean_values_rendered_lowercase(self, make_descriptor) -> None:
        transformer = _transformer(
            make_descriptor(get_environment=lambda s, e, d: {**e, "FEATURE": True})
        )
        result = await transformer.transform(SAMPLE_COMPOSE)
        assert result["services"]["db"]["environment"]["FEATURE"] == "true"
