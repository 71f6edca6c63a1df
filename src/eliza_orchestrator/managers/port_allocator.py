"""Probe-and-pick TCP port allocation for service containers."""

import socket
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from eliza_orchestrator.utils import get_logger
from eliza_orchestrator.utils.exceptions import InternalError, PortUnavailableError

logger = get_logger(__name__)


@dataclass(frozen=True)
class PortAllocation:
    """Port preferences for one service; ``range_end`` is exclusive."""

    service: str
    display_name: str
    default: int
    fallback: int
    range_start: int
    range_end: int

    def candidates(self, preferred: int) -> list[int]:
        ordered = [preferred, self.fallback, *range(self.range_start, self.range_end)]
        seen: list[int] = []
        for port in ordered:
            if port not in seen:
                seen.append(port)
        return seen


SERVICE_PORTS: Dict[str, PortAllocation] = {
    "postgres": PortAllocation("postgres", "PostgreSQL", 5432, 5432, 5434, 5440),
    "ollama": PortAllocation("ollama", "Ollama", 11434, 11435, 11436, 11440),
    "agent": PortAllocation("agent", "Agent", 7777, 7778, 7779, 7785),
}


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """Bind then immediately close; True if the bind succeeded."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:
    """
    Chooses host ports for services.

    A returned port was free when probed; it is not reserved afterwards, so callers
    pass it to the runtime promptly.
    """

    def __init__(self, probe: Callable[[int], bool] = is_port_free) -> None:
        """
        Initialize port allocator.

        Args:
            probe: Returns True when a port can be bound on 127.0.0.1
        """
        self._probe = probe
        self._allocated: Dict[str, int] = {}

    def allocate(self, service: str, preferred: Optional[int] = None) -> int:
        """
        Pick a port for a service.

        Tries ``preferred`` (the service default when omitted), then the fallback,
        then the search range in order.

        Args:
            service: Service key (postgres, ollama or agent)
            preferred: Port to try first

        Returns:
            Chosen port

        Raises:
            PortUnavailableError: If every candidate is taken
            InternalError: For an unknown service key
        """
        allocation = SERVICE_PORTS.get(service)
        if allocation is None:
            raise InternalError(f"no port allocation defined for service {service}")

        preferred = allocation.default if preferred is None else preferred
        for port in allocation.candidates(preferred):
            if self._probe(port):
                if port != allocation.default:
                    logger.info(
                        "Using alternative port",
                        extra={"service": service, "port": port, "default": allocation.default},
                    )
                self._allocated[service] = port
                return port

        raise PortUnavailableError(
            allocation.display_name,
            allocation.range_start,
            allocation.range_end - 1,
            preferred,
            allocation.fallback,
        )

    def adopt(self, service: str, port: int) -> int:
        """
        Record a port already published by a running container of the service.

        The port is not bind-checked; the container holding it keeps it busy.
        """
        if service not in SERVICE_PORTS:
            raise InternalError(f"no port allocation defined for service {service}")
        logger.info("Reusing published port", extra={"service": service, "port": port})
        self._allocated[service] = port
        return port

    def allocated(self, service: str) -> Optional[int]:
        """Return the last port chosen for a service."""
        return self._allocated.get(service)
