"""Host port allocation for published container ports.

Two strategies are provided:

* :class:`FreePortAllocator` asks the OS for bindable ports, scanning
  upward from a start port.  Used for exclusive, ephemeral environments.
* :class:`SerialPortAllocator` computes ports as a pure function of the
  declared (service, port) pairs, so repeated runs resolve to the same
  bindings.  Used when an existing environment may be reused.
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import TYPE_CHECKING, Iterable

from src.compose_env.constants import MAX_BIND_FAILURES, MAX_PORT
from src.compose_env.exceptions import PortAllocationError
from src.compose_env.models import PortReservation

if TYPE_CHECKING:
    from src.compose_env.descriptor import EnvironmentDescriptor
    from src.compose_env.protocols import PortAllocator

logger = logging.getLogger(__name__)


def is_port_bindable(port: int, host: str = "") -> bool:
    """Return True if a TCP socket can currently bind *port* on *host*."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


class FreePortAllocator:
    """Hands out host ports that pass a live bind test.

    Reservations are serialised with a lock so that no two services in
    the same run receive the same port.  The scan cursor only moves
    forward, so ports handed out before :meth:`release_all` are not
    reissued by this instance.  Other processes are guarded against only
    by the bind test; a lost race surfaces later as a launch failure.
    """

    def __init__(
        self,
        start: int,
        host: str = "",
        max_failures: int = MAX_BIND_FAILURES,
    ) -> None:
        self.start = start
        self.host = host
        self.max_failures = max_failures
        self._cursor = start
        self._lock = threading.Lock()
        self._by_key: dict[tuple[str, int], PortReservation] = {}
        self._taken: set[int] = set()

    def reserve(self, service: str, container_port: int) -> int:
        with self._lock:
            key = (service, container_port)
            existing = self._by_key.get(key)
            if existing is not None:
                return existing.host_port

            failures = 0
            while self._cursor <= MAX_PORT:
                candidate = self._cursor
                self._cursor += 1
                if candidate in self._taken:
                    continue
                if is_port_bindable(candidate, self.host):
                    reservation = PortReservation(service, container_port, candidate)
                    self._by_key[key] = reservation
                    self._taken.add(candidate)
                    logger.debug(
                        "Reserved host port %d for %s:%d", candidate, service, container_port
                    )
                    return candidate
                failures += 1
                if failures >= self.max_failures:
                    raise PortAllocationError(
                        service,
                        container_port,
                        f"{failures} consecutive ports refused binding",
                    )

            raise PortAllocationError(
                service, container_port, f"port range {self.start}-{MAX_PORT} exhausted"
            )

    def release_all(self) -> None:
        with self._lock:
            if self._by_key:
                logger.debug("Releasing %d port reservations", len(self._by_key))
            self._by_key.clear()

    @property
    def reservations(self) -> list[PortReservation]:
        with self._lock:
            return list(self._by_key.values())


class SerialPortAllocator:
    """Deterministic allocator: ``host_port = start + index``.

    The index of a (service, port) pair is its position in the sorted list
    of all declared pairs, so the same descriptor always yields the same
    bindings and no probing takes place.
    """

    def __init__(self, start: int, declared: Iterable[tuple[str, int]]) -> None:
        self.start = start
        self._index = {pair: i for i, pair in enumerate(sorted(set(declared)))}
        self._reserved: dict[tuple[str, int], PortReservation] = {}

    def port_for(self, service: str, container_port: int) -> int:
        """Compute the host port without recording a reservation."""
        index = self._index.get((service, container_port))
        if index is None:
            raise PortAllocationError(service, container_port, "port is not declared")
        host_port = self.start + index
        if host_port > MAX_PORT:
            raise PortAllocationError(
                service, container_port, f"computed port {host_port} exceeds {MAX_PORT}"
            )
        return host_port

    def reserve(self, service: str, container_port: int) -> int:
        key = (service, container_port)
        if key not in self._reserved:
            self._reserved[key] = PortReservation(
                service, container_port, self.port_for(service, container_port)
            )
        return self._reserved[key].host_port

    def release_all(self) -> None:
        self._reserved.clear()

    @property
    def reservations(self) -> list[PortReservation]:
        return list(self._reserved.values())


def create_allocator(descriptor: EnvironmentDescriptor) -> PortAllocator:
    """Select the allocation strategy for *descriptor*.

    Environments that may be reused need stable bindings, so they get the
    serial allocator; everything else searches for free ports.
    """
    if descriptor.try_find_existing_environment:
        return SerialPortAllocator(descriptor.port_range_start, descriptor.declared_pairs())
    return FreePortAllocator(descriptor.port_range_start)
