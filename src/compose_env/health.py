"""HTTP health checks usable as a descriptor ``wait_for_ready`` hook."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from src.compose_env.discovery import Discovery

logger = logging.getLogger(__name__)


async def check_health(service: str, url: str, timeout: float = 5.0) -> bool:
    """Check a service's health endpoint.

    Args:
        service: Name of the service being checked.
        url: Full URL to the health endpoint.
        timeout: Request timeout in seconds.

    Returns:
        True if the endpoint answered with a status below 400.
    """
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(url)
    except httpx.HTTPError as exc:
        logger.debug("Health check failed for '%s' at %s: %s", service, url, exc)
        return False
    healthy = resp.status_code < 400
    if not healthy:
        logger.debug(
            "Service '%s' unhealthy: status %d from %s", service, resp.status_code, url
        )
    return healthy


def http_ready_hook(
    endpoints: dict[str, tuple[int, str]],
    interval: float = 0.5,
    scheme: str = "http",
) -> Callable[[Discovery], Awaitable[None]]:
    """Build a ``wait_for_ready`` hook that polls HTTP health endpoints.

    The hook resolves each service through Discovery and polls until every
    endpoint is healthy.  It never gives up on its own: the readiness
    waiter bounds it with the remaining start timeout.

    Args:
        endpoints: Service name to (declared container port, path),
            e.g. ``{"api": (8080, "/health")}``.
        interval: Seconds between polls.
        scheme: URL scheme.

    Returns:
        Coroutine function taking the Discovery table.
    """

    async def wait_for_ready(discovery: Discovery) -> None:
        urls = {
            service: discovery.resolve(service).url(port, scheme) + path
            for service, (port, path) in endpoints.items()
        }
        remaining = dict(urls)
        while remaining:
            for service, url in list(remaining.items()):
                if await check_health(service, url):
                    logger.info("Service %s is healthy at %s", service, url)
                    del remaining[service]
            if remaining:
                await asyncio.sleep(interval)

    return wait_for_ready
