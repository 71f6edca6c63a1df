"""Input/Output models for the MCP command tools."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from eliza_orchestrator.models import AiProvider, UserConfig


class StartupStatusOutput(BaseModel):
    """Snapshot of the startup machine."""

    stage: str = Field(..., description="Current stage")
    progress: int = Field(..., description="Progress percentage 0..100")
    message: str = Field(..., description="Short headline")
    details: str = Field(default="", description="Longer explanation")
    can_retry: bool = Field(default=False, description="Whether retry_startup is allowed")
    container_statuses: Dict[str, str] = Field(
        default_factory=dict, description="Container state keyed by service"
    )
    error: Optional[Dict[str, Any]] = Field(None, description="Serialized error when stage is Error")
    failed_container: Optional[str] = Field(None, description="Container that caused the failure")
    realtime_degraded: bool = Field(
        default=False, description="Ready without a realtime connection"
    )


class UserConfigInput(BaseModel):
    """Input model for submit_user_config tool."""

    ai_provider: AiProvider = Field(default=AiProvider.OLLAMA, description="Model provider")
    api_key: Optional[str] = Field(None, description="API key for OpenAI or Anthropic")
    use_local_ollama: bool = Field(default=True, description="Run the Ollama container")
    postgres_enabled: bool = Field(default=True, description="Run the postgres container")

    def to_user_config(self) -> UserConfig:
        return UserConfig(**self.model_dump())


class SetupProgressOutput(BaseModel):
    """Output model for get_setup_progress tool."""

    stage: str = Field(..., description="Checkpoint name")
    progress: int = Field(..., description="Progress percentage 0..100")
    message: str = Field(default="", description="Short headline")
    details: str = Field(default="", description="Longer explanation")
    can_retry: bool = Field(default=False, description="Whether the checkpoint is an error")
    updated_at: str = Field(..., description="ISO timestamp of the last update")


class ContainerInput(BaseModel):
    """Input model for single-container tools."""

    container: str = Field(
        ..., description="Service key (postgres, ollama, agent) or container name"
    )


class ContainerOutput(BaseModel):
    """Output model for single-container tools."""

    container: Dict[str, Any] = Field(..., description="Container record")


class ContainerStatusesOutput(BaseModel):
    """Output model for get_container_statuses tool."""

    containers: List[Dict[str, Any]] = Field(..., description="Tracked container records")


class StopAllOutput(BaseModel):
    """Output model for stop_all_containers tool."""

    not_stopped: List[str] = Field(
        default_factory=list, description="Containers left to the runtime"
    )


class ContainerLogsInput(BaseModel):
    """Input model for get_container_logs tool."""

    container: str = Field(..., description="Service key or container name")
    tail: int = Field(default=100, description="Number of trailing lines")


class ContainerLogsOutput(BaseModel):
    """Output model for get_container_logs tool."""

    container: str = Field(..., description="Container name")
    lines: List[str] = Field(..., description="Log lines, oldest first")


class SendMessageInput(BaseModel):
    """Input model for send_message_to_agent tool."""

    text: str = Field(..., description="Message content")


class SendMessageOutput(BaseModel):
    """Output model for send_message_to_agent tool."""

    result: str = Field(..., description="Confirmation naming the delivery path")


class ConnectRealtimeInput(BaseModel):
    """Input model for connect_realtime tool."""

    url: Optional[str] = Field(None, description="Agent origin, defaults to the agent's address")


class JoinChannelInput(BaseModel):
    """Input model for join_channel tool."""

    channel_id: str = Field(..., description="Channel (room) UUID")


class RealtimeStatusOutput(BaseModel):
    """Realtime connection status."""

    state: str = Field(..., description="Connection state")
    transport: Optional[str] = Field(None, description="socketio or websocket")
    url: Optional[str] = Field(None, description="Connected agent origin")
    channel_id: str = Field(..., description="Current channel")
    reconnect_attempts: int = Field(default=0, description="Reconnect attempts so far")


class HealthCheckOutput(BaseModel):
    """Output model for health_check tool."""

    status: str = Field(..., description="healthy, degraded, starting or error")
    stage: str = Field(..., description="Current startup stage")
    runtime: Optional[str] = Field(None, description="Detected runtime kind")
    agent_healthy: bool = Field(..., description="Agent health endpoint accepted")
    realtime: Dict[str, Any] = Field(..., description="Realtime status")
    containers: List[Dict[str, Any]] = Field(default_factory=list, description="Container records")
    version: str = "0.1.0"


class PollEventsInput(BaseModel):
    """Input model for poll_events tool."""

    after_seq: int = Field(default=0, description="Return events with seq greater than this")
    limit: int = Field(default=500, description="Maximum number of events")


class PollEventsOutput(BaseModel):
    """Output model for poll_events tool."""

    events: List[Dict[str, Any]] = Field(..., description="Events in publication order")
    next_seq: int = Field(..., description="Cursor for the next poll")
    truncated: bool = Field(
        default=False, description="Whether older events were evicted before the cursor"
    )


class MetricsOutput(BaseModel):
    """Output model for get_metrics tool."""

    content: str = Field(..., description="Prometheus text exposition")


class AgentRelayInput(BaseModel):
    """Input model for agent_api_relay tool."""

    endpoint: str = Field(..., description="Relay endpoint name, e.g. get_goals")
    path_params: Optional[Dict[str, str]] = Field(None, description="Path placeholder values")
    payload: Optional[Any] = Field(None, description="JSON body for POST/PUT endpoints")
    params: Optional[Dict[str, Any]] = Field(None, description="Query parameters")
    timeout_s: Optional[float] = Field(None, description="Per-command timeout in seconds")


class AgentRelayOutput(BaseModel):
    """Output model for agent_api_relay tool."""

    endpoint: str = Field(..., description="Relay endpoint name")
    result: Any = Field(None, description="Decoded agent response")
