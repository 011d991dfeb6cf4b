"""
Port Allocator for Spindle Services

Finds TCP ports that are both free at the OS level and not claimed by a
running managed container. Pure lookups: callers act on the returned port.
"""

import errno
import logging
import socket
from dataclasses import dataclass
from typing import Iterable, Optional

from ..errors import NoAvailablePortError

logger = logging.getLogger("spindle")


@dataclass(frozen=True)
class PortAllocation:
    """Result of a port search. is_default means the preferred port was granted."""
    port: int
    is_default: bool


class PortAllocator:
    """Service for probing and allocating loopback ports"""

    def __init__(self, host: str = "127.0.0.1"):
        self.host = host

    def is_available(self, port: int) -> bool:
        """
        Check whether a port can be bound on the loopback interface.

        EADDRINUSE means taken. Any other bind error is treated as
        available so that ambiguous OS errors never block startup.
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((self.host, port))
            return True
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                return False
            logger.debug(f"Port probe on {port} raised {e}, treating as available")
            return True
        finally:
            sock.close()

    def find_available(self, preferred: int, port_range: tuple[int, int]) -> PortAllocation:
        """Find a free port, trying preferred first and then scanning the range."""
        return self.find_available_excluding(preferred, port_range, ())

    def find_available_excluding(
        self,
        preferred: int,
        port_range: tuple[int, int],
        exclude: Iterable[int],
    ) -> PortAllocation:
        """
        Find a free port that is not in exclude.

        Args:
            preferred: Port to try first
            port_range: Inclusive (start, end) range to scan
            exclude: Ports that must never be returned

        Raises:
            NoAvailablePortError: If every port in the range is taken
        """
        excluded = set(exclude)
        start, end = port_range

        if preferred not in excluded and self.is_available(preferred):
            return PortAllocation(port=preferred, is_default=True)

        for port in range(start, end + 1):
            if port == preferred or port in excluded:
                continue
            if self.is_available(port):
                return PortAllocation(port=port, is_default=False)

        raise NoAvailablePortError(start, end)

    @staticmethod
    def get_running_container_ports(registry, engine: Optional[str] = None) -> set[int]:
        """Ports held by containers whose persisted status is running."""
        ports = set()
        for config in registry.list():
            if engine and config.engine != engine:
                continue
            if config.status == "running" and config.port:
                ports.add(config.port)
        return ports

    def find_available_excluding_managed(
        self,
        preferred: int,
        port_range: tuple[int, int],
        registry,
        extra_exclude: Iterable[int] = (),
    ) -> PortAllocation:
        """Like find_available, but never returns a port of a running managed container."""
        managed = self.get_running_container_ports(registry)
        return self.find_available_excluding(preferred, port_range, managed | set(extra_exclude))
