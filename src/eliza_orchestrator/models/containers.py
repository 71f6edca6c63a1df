"""Container specifications and records tracked by the container manager."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Tuple, Union


class ContainerState(str, Enum):
    """Abstract container state parsed from runtime output."""

    NOT_FOUND = "not_found"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    # Observed only: paused or otherwise unrecognised runtime states
    UNKNOWN = "unknown"


class HealthStatus(str, Enum):
    """Health as reported by the health prober."""

    UNKNOWN = "unknown"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


def parse_container_port(key: Union[str, int]) -> int:
    """Accept both ``5432/tcp`` and bare ``5432`` port keys."""
    if isinstance(key, int):
        return key
    return int(str(key).strip().split("/", 1)[0])


@dataclass(frozen=True)
class PortBinding:
    """Host port published for a container port."""

    container_port: int
    host_port: int
    host_ip: str = "127.0.0.1"

    def to_cli(self) -> str:
        """Render as a ``-p`` argument."""
        return f"{self.host_ip}:{self.host_port}:{self.container_port}"

    def describe(self) -> str:
        return f"{self.host_ip}:{self.host_port}->{self.container_port}"


@dataclass(frozen=True)
class VolumeMount:
    """Named volume or host path mounted into a container."""

    source: str
    target: str

    def to_cli(self) -> str:
        return f"{self.source}:{self.target}"

    @property
    def is_named_volume(self) -> bool:
        return not (self.source.startswith("/") or self.source.startswith("."))


@dataclass(frozen=True)
class ExecProbe:
    """Probe succeeds iff the command exits 0 inside the container."""

    cmd: Tuple[str, ...]


_MISSING = object()


def json_lookup(body: Any, dotted_key: str) -> Any:
    """Resolve ``data.status`` style keys in a decoded JSON body."""
    value = body
    for part in dotted_key.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


@dataclass(frozen=True)
class TcpProbe:
    """Probe succeeds iff a TCP handshake completes to the published port."""

    container_port: int


@dataclass(frozen=True)
class HttpProbe:
    """
    Probe succeeds iff GET returns 2xx and, when ``accept`` is non-empty, the JSON
    body matches at least one ``(dotted_key, value)`` pair.
    """

    path: str
    container_port: int
    accept: Tuple[Tuple[str, Any], ...] = ()

    def accepts(self, body: Any) -> bool:
        if not self.accept:
            return True
        return any(json_lookup(body, key) == expected for key, expected in self.accept)


Probe = Union[ExecProbe, TcpProbe, HttpProbe]


@dataclass(frozen=True)
class HealthCheckSpec:
    """Probe plus scheduling parameters, all durations in seconds."""

    probe: Probe
    interval: float
    timeout: float
    start_period: float
    retries: int


@dataclass(frozen=True)
class ContainerSpec:
    """Immutable request to run a container."""

    name: str
    image: str
    port_bindings: Tuple[PortBinding, ...] = ()
    environment: Tuple[str, ...] = ()
    volume_mounts: Tuple[VolumeMount, ...] = ()
    network: Optional[str] = None
    memory_limit: Optional[str] = None
    health_check: Optional[HealthCheckSpec] = None

    def host_port_for(self, container_port: int) -> int:
        """Resolve the host port published for a container port."""
        for binding in self.port_bindings:
            if binding.container_port == container_port:
                return binding.host_port
        return container_port


@dataclass(frozen=True)
class RuntimeStatus:
    """Typed view of one ``ps`` line."""

    id: str
    state: ContainerState
    started_at: Optional[datetime] = None
    raw_status: str = ""


@dataclass(frozen=True)
class ExecResult:
    """Result of a command executed in a container."""

    exit_code: int
    stdout: str
    stderr: str


@dataclass
class ContainerRecord:
    """The manager's view of a container: spec plus observed state."""

    spec: ContainerSpec
    runtime_id: Optional[str] = None
    state: ContainerState = ContainerState.NOT_FOUND
    health: HealthStatus = HealthStatus.UNKNOWN
    started_at: Optional[datetime] = None
    restart_count: int = 0
    last_error: Optional[str] = field(default=None, compare=False)

    @property
    def name(self) -> str:
        return self.spec.name

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.spec.name,
            "id": self.runtime_id,
            "image": self.spec.image,
            "state": self.state.value,
            "health": self.health.value,
            "ports": [binding.describe() for binding in self.spec.port_bindings],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "restart_count": self.restart_count,
            "last_error": self.last_error,
        }
