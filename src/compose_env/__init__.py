"""Ephemeral docker-compose test environments.

Turns an :class:`~src.compose_env.descriptor.EnvironmentDescriptor` into a
running, verified-ready set of services: host ports are allocated, the
compose file is rewritten, services are launched and checked, and the
resolved endpoints are published through a
:class:`~src.compose_env.discovery.Discovery` table.
"""

__version__ = "1.0.0"
