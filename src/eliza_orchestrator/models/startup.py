"""Startup stages, status snapshots and user configuration."""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field


class StartupStage(str, Enum):
    """Stages of the startup machine in progression order."""

    INITIALIZING = "Initializing"
    DETECTING_RUNTIME = "DetectingRuntime"
    RUNTIME_DETECTED = "RuntimeDetected"
    PROMPTING_CONFIG = "PromptingConfig"
    CONFIG_RECEIVED = "ConfigReceived"
    INITIALIZING_CONTAINERS = "InitializingContainers"
    STARTING_DATABASE = "StartingDatabase"
    STARTING_OLLAMA = "StartingOllama"
    DOWNLOADING_MODELS = "DownloadingModels"
    STARTING_AGENT = "StartingAgent"
    WAITING_FOR_HEALTH = "WaitingForHealth"
    CONTAINERS_READY = "ContainersReady"
    STARTING_MESSAGE_SERVER = "StartingMessageServer"
    MESSAGE_SERVER_READY = "MessageServerReady"
    READY = "Ready"
    ERROR = "Error"

    @property
    def order(self) -> int:
        return _STAGE_ORDER[self]

    @property
    def is_terminal(self) -> bool:
        return self in (StartupStage.READY, StartupStage.ERROR)

    def can_advance_to(self, target: "StartupStage") -> bool:
        """Forward-only progression; Error is reachable from any non-terminal stage."""
        if self.is_terminal:
            return False
        if target is StartupStage.ERROR:
            return True
        return target.order > self.order


_STAGE_ORDER = {stage: index for index, stage in enumerate(StartupStage)}


class AiProvider(str, Enum):
    """Model provider selected by the user."""

    OLLAMA = "ollama"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class UserConfig(BaseModel):
    """Configuration captured from the user before containers start."""

    ai_provider: AiProvider = Field(default=AiProvider.OLLAMA, description="Model provider")
    api_key: Optional[str] = Field(default=None, description="Provider API key")
    use_local_ollama: bool = Field(default=True, description="Run the Ollama container")
    postgres_enabled: bool = Field(default=True, description="Run the postgres container")

    @property
    def ollama_required(self) -> bool:
        return self.ai_provider is AiProvider.OLLAMA

    @property
    def ollama_wanted(self) -> bool:
        return self.ollama_required or self.use_local_ollama


@dataclass(frozen=True)
class StartupStatus:
    """Copy-on-write snapshot of the startup machine."""

    stage: StartupStage = StartupStage.INITIALIZING
    progress: int = 0
    message: str = "Starting up"
    details: str = ""
    container_statuses: Mapping[str, str] = field(default_factory=dict)
    error: Optional[dict[str, Any]] = None
    failed_container: Optional[str] = None
    realtime_degraded: bool = False

    @property
    def can_retry(self) -> bool:
        return self.stage is StartupStage.ERROR

    def evolve(self, **changes: Any) -> "StartupStatus":
        if "container_statuses" in changes:
            changes["container_statuses"] = dict(changes["container_statuses"])
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "stage": self.stage.value,
            "progress": self.progress,
            "message": self.message,
            "details": self.details,
            "can_retry": self.can_retry,
            "container_statuses": dict(self.container_statuses),
            "error": self.error,
            "failed_container": self.failed_container,
            "realtime_degraded": self.realtime_degraded,
        }


@dataclass(frozen=True)
class SetupProgress:
    """Progress cell owned by the container manager."""

    stage: str = "idle"
    progress: int = 0
    message: str = ""
    details: str = ""
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def can_retry(self) -> bool:
        return self.stage == "error"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "stage": self.stage,
            "progress": self.progress,
            "message": self.message,
            "details": self.details,
            "can_retry": self.can_retry,
            "updated_at": self.updated_at.isoformat(),
        }
