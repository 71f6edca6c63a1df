"""Settings and configuration management for the Eliza orchestrator."""

from functools import lru_cache
from pathlib import Path
from typing import List, Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_AGENT_ID = "2fbc0c27-50f4-09f2-9fe4-9dd27d76d46f"
DEFAULT_ROOM_ID = "ce5f41b4-fe24-4c01-9971-aecfed20a6bd"


def _split(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Instances are immutable; use get_settings() for the process-wide copy.
    """

    model_config = SettingsConfigDict(
        env_prefix="ELIZA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # Agent identity and endpoints
    agent_id: str = Field(
        default=DEFAULT_AGENT_ID,
        description="Agent UUID used in handshake frames and HTTP envelopes",
    )

    room_id: str = Field(
        default=DEFAULT_ROOM_ID,
        description="Default channel (room) joined after the agent is ready",
    )

    api_base_url: str = Field(
        default="http://localhost:7777",
        description="Base URL of the agent server HTTP API",
    )

    websocket_url: str = Field(
        default="ws://localhost:7777",
        description="Base URL of the agent server real-time endpoint",
    )

    # Host keys read without the ELIZA_ prefix
    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_API_KEY", "openai_api_key"),
        description="OpenAI key passed through to the agent container",
    )

    anthropic_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("ANTHROPIC_API_KEY", "anthropic_api_key"),
        description="Anthropic key passed through to the agent container",
    )

    ollama_server_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("OLLAMA_SERVER_URL", "ollama_server_url"),
        description="Overrides the in-network Ollama URL written to the agent",
    )

    use_small_models: str | None = Field(
        default=None,
        validation_alias=AliasChoices("USE_SMALL_MODELS", "use_small_models"),
    )

    jwt_secret: str | None = Field(
        default=None,
        validation_alias=AliasChoices("JWT_SECRET", "jwt_secret"),
    )

    embedding_provider: str | None = Field(
        default=None,
        validation_alias=AliasChoices("EMBEDDING_PROVIDER", "embedding_provider"),
    )

    text_provider: str | None = Field(
        default=None,
        validation_alias=AliasChoices("TEXT_PROVIDER", "text_provider"),
    )

    auto_send_test_message: str | None = Field(
        default=None,
        validation_alias=AliasChoices("AUTO_SEND_TEST_MESSAGE", "auto_send_test_message"),
    )

    # Container runtime configuration
    runtime_preference: Literal["auto", "podman", "docker"] = Field(
        default="auto",
        description="Restrict runtime detection to one engine",
    )

    resource_dir: Path = Field(
        default=Path("./resources"),
        description="Bundled resources: bin/ for runtimes, container-images/ for tarballs",
    )

    download_dir: Path = Field(
        default=Path.home() / ".eliza" / "bin",
        description="Location of a previously downloaded runtime binary",
    )

    runtime_command_timeout_s: float = Field(
        default=120.0,
        description="Timeout in seconds for a single runtime CLI invocation",
    )

    runtime_version_timeout_s: float = Field(
        default=5.0,
        description="Timeout in seconds for the runtime version probe",
    )

    local_image_prefixes: str = Field(
        default="localhost/,eliza-agent",
        description="Comma-separated prefixes of image refs that are never pulled",
    )

    allowed_registries: str = Field(
        default="docker.io,ghcr.io,quay.io",
        description="Comma-separated list of registries pullable images may come from",
    )

    agent_image_candidates: str = Field(
        default="eliza-agent-server:latest,eliza-agent-working:latest,eliza-agent:latest",
        description="Comma-separated agent images, first existing one wins",
    )

    # Startup configuration
    network_name: str = Field(
        default="eliza-network",
        description="Bridge network shared by all service containers",
    )

    postgres_db: str = Field(default="eliza_game", description="Database created in postgres")
    postgres_user: str = Field(default="eliza", description="Postgres role used by the agent")
    postgres_password: str = Field(
        default="eliza_secure_pass",
        description="Postgres password used by the agent",
    )

    required_models: str = Field(
        default="llama3.2:3b,nomic-embed-text",
        description="Comma-separated Ollama models fetched before the agent starts",
    )

    language_model: str = Field(default="llama3.2:3b", description="Agent text model")
    embedding_model: str = Field(default="nomic-embed-text", description="Agent embedding model")

    config_prompt_timeout_s: float = Field(
        default=60.0,
        description="Seconds to wait for a user config before applying the default (0 = no wait)",
    )

    model_pull_timeout_s: float = Field(
        default=600.0,
        description="Per-model timeout for Ollama pulls",
    )

    model_poll_interval_s: float = Field(
        default=5.0,
        description="Interval between /api/tags polls while a model is pulled",
    )

    existing_server_timeout_s: float = Field(
        default=5.0,
        description="Timeout for the existing agent server health probe",
    )

    # Recovery configuration
    recovery_delay_s: float = Field(
        default=5.0,
        description="Stabilization delay after restarting the agent container",
    )

    recovery_max_attempts: int = Field(
        default=1,
        description="Extra invocations allowed after a connection-class failure",
    )

    recovery_verbose_logging: bool = Field(
        default=True,
        description="Log each recovery step at info level",
    )

    # Realtime configuration
    realtime_transport: Literal["auto", "socketio", "websocket"] = Field(
        default="auto",
        description="Realtime transport (auto negotiates Socket.IO, then raw WebSocket)",
    )

    max_reconnect_attempts: int = Field(
        default=5,
        description="Reconnect attempts before the realtime client gives up",
    )

    http_timeout_s: float = Field(
        default=10.0,
        description="Default timeout for agent HTTP requests",
    )

    # Shutdown configuration
    stop_all_budget_s: float = Field(
        default=30.0,
        description="Wall-clock budget for stopping containers on shutdown",
    )

    drain_grace_s: float = Field(
        default=5.0,
        description="Grace period in seconds for draining operations during shutdown",
    )

    # Logging configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    log_format: str = Field(
        default="json",
        description="Log format (json or text)",
    )

    # Command transport configuration
    transport_mode: Literal["stdio", "sse", "streamable-http"] = Field(
        default="stdio",
        description="Transport protocol for the command server (stdio, sse, or streamable-http)",
    )

    host: str = Field(default="127.0.0.1", description="Server host to bind to")
    port: int = Field(default=8765, description="Server port to bind to")
    path: str = Field(default="/mcp", description="Path for HTTP-based transports")

    auto_start: bool = Field(
        default=False,
        description="Start initialization as soon as the command server boots",
    )

    @field_validator("agent_id", "room_id", "api_base_url", "websocket_url")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @property
    def local_image_prefixes_list(self) -> List[str]:
        """Parse local image prefixes into a list."""
        return _split(self.local_image_prefixes)

    @property
    def allowed_registries_list(self) -> List[str]:
        """Parse allowed registries into a list."""
        return _split(self.allowed_registries)

    @property
    def agent_image_candidates_list(self) -> List[str]:
        """Parse agent image candidates into a list."""
        return _split(self.agent_image_candidates)

    @property
    def required_models_list(self) -> List[str]:
        """Parse required models into a list."""
        return _split(self.required_models)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
