"""Domain models for the Eliza orchestrator."""

from .containers import (
    ContainerRecord,
    ContainerSpec,
    ContainerState,
    ExecProbe,
    ExecResult,
    HealthCheckSpec,
    HealthStatus,
    HttpProbe,
    PortBinding,
    RuntimeStatus,
    TcpProbe,
    VolumeMount,
    json_lookup,
)
from .messages import MessageKind, RealtimeMessage
from .startup import AiProvider, SetupProgress, StartupStage, StartupStatus, UserConfig

__all__ = [
    "AiProvider",
    "ContainerRecord",
    "ContainerSpec",
    "ContainerState",
    "ExecProbe",
    "ExecResult",
    "HealthCheckSpec",
    "HealthStatus",
    "HttpProbe",
    "MessageKind",
    "PortBinding",
    "RealtimeMessage",
    "RuntimeStatus",
    "SetupProgress",
    "StartupStage",
    "StartupStatus",
    "TcpProbe",
    "UserConfig",
    "VolumeMount",
    "json_lookup",
]
