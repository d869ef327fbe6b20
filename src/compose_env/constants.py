"""Shared constants for compose test environments."""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Process environment
# ---------------------------------------------------------------------------
UNDER_COMPOSE_ENV = "UNDER_COMPOSE"
DOCKER_BINARY_ENV = "COMPOSE_ENV_DOCKER"

# ---------------------------------------------------------------------------
# Descriptor defaults (seconds)
# ---------------------------------------------------------------------------
DEFAULT_START_TIMEOUT = 40.0
DEFAULT_STOP_TIMEOUT = 20.0
DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_CONNECT_TIMEOUT = 1.0
DEFAULT_DOCKER_HOST = "localhost"
DEFAULT_LAUNCH_ATTEMPTS = 2

# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------
DYNAMIC_PORT_START = 49152
MAX_PORT = 65535
# Consecutive failed bind attempts before free allocation gives up
MAX_BIND_FAILURES = 1000

# Fragments of `docker compose up` output that indicate a host port race
PORT_CONFLICT_MARKERS = (
    "port is already allocated",
    "address already in use",
    "ports are not available",
)

# ---------------------------------------------------------------------------
# Orchestrator states
# ---------------------------------------------------------------------------
STATE_NOT_STARTED = "not_started"
STATE_DETECTING = "detecting"
STATE_PREPARING = "preparing"
STATE_LAUNCHING = "launching"
STATE_AWAITING_READY = "awaiting_ready"
STATE_READY = "ready"
STATE_TORN_DOWN = "torn_down"
STATE_STARTUP_FAILED = "startup_failed"
STATE_TEARDOWN_FAILED = "teardown_failed"

ALL_STATES = [
    STATE_NOT_STARTED,
    STATE_DETECTING,
    STATE_PREPARING,
    STATE_LAUNCHING,
    STATE_AWAITING_READY,
    STATE_READY,
    STATE_TORN_DOWN,
    STATE_STARTUP_FAILED,
    STATE_TEARDOWN_FAILED,
]

# Suffix for the transformed compose file written beside the source file
EFFECTIVE_COMPOSE_SUFFIX = ".effective.yml"
