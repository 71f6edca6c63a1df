"""Container specifications for the three cooperating services."""

import uuid
from typing import Dict, List, Optional

from eliza_orchestrator.config import Settings
from eliza_orchestrator.models import (
    AiProvider,
    ContainerSpec,
    ExecProbe,
    HealthCheckSpec,
    HttpProbe,
    PortBinding,
    UserConfig,
    VolumeMount,
)

POSTGRES_CONTAINER = "eliza-postgres"
OLLAMA_CONTAINER = "eliza-ollama"
AGENT_CONTAINER = "eliza-agent"

POSTGRES_IMAGE = "pgvector/pgvector:pg16"
OLLAMA_IMAGE = "ollama/ollama:latest"

# Service key used in StartupStatus.container_statuses
SERVICE_KEYS = {
    POSTGRES_CONTAINER: "postgres",
    OLLAMA_CONTAINER: "ollama",
    AGENT_CONTAINER: "agent",
}

# Ports the services listen on inside their containers
SERVICE_CONTAINER_PORTS = {"postgres": 5432, "ollama": 11434}

# Well-known tarball names under <resource_dir>/container-images
BUNDLED_TARBALLS = {
    POSTGRES_IMAGE: "eliza-postgres.tar",
    OLLAMA_IMAGE: "eliza-ollama.tar",
    "eliza-agent-server:latest": "eliza-agent.tar",
}

AGENT_HEALTH_ACCEPT = (("success", True), ("status", "OK"), ("data.status", "healthy"))

# Host keys forwarded to the agent when set
_PASSTHROUGH = {
    "USE_SMALL_MODELS": "use_small_models",
    "OPENAI_API_KEY": "openai_api_key",
    "ANTHROPIC_API_KEY": "anthropic_api_key",
    "JWT_SECRET": "jwt_secret",
    "EMBEDDING_PROVIDER": "embedding_provider",
    "TEXT_PROVIDER": "text_provider",
    "AUTO_SEND_TEST_MESSAGE": "auto_send_test_message",
}


def postgres_spec(settings: Settings, host_port: int) -> ContainerSpec:
    """Build the postgres (pgvector) container spec."""
    return ContainerSpec(
        name=POSTGRES_CONTAINER,
        image=POSTGRES_IMAGE,
        port_bindings=(
            PortBinding(container_port=SERVICE_CONTAINER_PORTS["postgres"], host_port=host_port),
        ),
        environment=(
            f"POSTGRES_DB={settings.postgres_db}",
            f"POSTGRES_USER={settings.postgres_user}",
            f"POSTGRES_PASSWORD={settings.postgres_password}",
            "POSTGRES_INITDB_ARGS=--encoding=UTF-8 --locale=C",
        ),
        volume_mounts=(
            VolumeMount("eliza-postgres-data", "/var/lib/postgresql/data"),
            VolumeMount("eliza-postgres-init", "/docker-entrypoint-initdb.d"),
        ),
        network=settings.network_name,
        memory_limit="2g",
        health_check=HealthCheckSpec(
            probe=ExecProbe(
                ("pg_isready", "-U", settings.postgres_user, "-d", settings.postgres_db)
            ),
            interval=2.0,
            timeout=5.0,
            start_period=5.0,
            retries=15,
        ),
    )


def ollama_spec(settings: Settings, host_port: int) -> ContainerSpec:
    """Build the Ollama model server container spec."""
    return ContainerSpec(
        name=OLLAMA_CONTAINER,
        image=OLLAMA_IMAGE,
        port_bindings=(
            PortBinding(container_port=SERVICE_CONTAINER_PORTS["ollama"], host_port=host_port),
        ),
        environment=("OLLAMA_PORT=11434",),
        volume_mounts=(VolumeMount("eliza-ollama-data", "/root/.ollama"),),
        network=settings.network_name,
        memory_limit="16g",
        health_check=HealthCheckSpec(
            probe=HttpProbe("/api/tags", container_port=11434),
            interval=3.0,
            timeout=5.0,
            start_period=5.0,
            retries=20,
        ),
    )


def agent_environment(
    settings: Settings,
    config: UserConfig,
    ports: Dict[str, int],
    agent_id: Optional[str] = None,
) -> List[str]:
    """
    Build the agent container environment.

    URLs use in-network names since all services share one network; the allocated
    host ports are advertised through the port variables.

    Args:
        settings: Process settings
        config: User configuration
        ports: Allocated host ports keyed by service
        agent_id: Agent UUID, random when omitted

    Returns:
        KEY=VALUE entries in a stable order
    """
    db = settings.postgres_db
    credentials = f"{settings.postgres_user}:{settings.postgres_password}"
    database_url = f"postgresql://{credentials}@{POSTGRES_CONTAINER}:5432/{db}"
    ollama_url = settings.ollama_server_url or f"http://{OLLAMA_CONTAINER}:11434"
    agent_port = ports["agent"]

    env: Dict[str, str] = {
        "NODE_ENV": "production",
        "AGENT_CONTAINER": "true",
        "LOG_LEVEL": "info",
        "PORT": str(agent_port),
        "SERVER_PORT": str(agent_port),
    }
    if config.postgres_enabled:
        env.update(
            {
                "DATABASE_URL": database_url,
                "POSTGRES_URL": database_url,
                "POSTGRES_HOST": POSTGRES_CONTAINER,
                "POSTGRES_PORT": str(ports.get("postgres", 5432)),
                "POSTGRES_DB": db,
                "POSTGRES_USER": settings.postgres_user,
                "POSTGRES_PASSWORD": settings.postgres_password,
            }
        )
    env.update(
        {
            "OLLAMA_URL": ollama_url,
            "OLLAMA_SERVER_URL": ollama_url,
            "OLLAMA_BASE_URL": ollama_url,
            "MODEL_PROVIDER": config.ai_provider.value,
            "TEXT_PROVIDER": config.ai_provider.value,
            "EMBEDDING_PROVIDER": "ollama" if config.ollama_wanted else config.ai_provider.value,
            "LANGUAGE_MODEL": settings.language_model,
            "TEXT_EMBEDDING_MODEL": settings.embedding_model,
            "AUTONOMY_ENABLED": "true",
            "AUTONOMY_AUTO_START": "true",
            "LOAD_DOCS_ON_STARTUP": "true",
            "CTX_KNOWLEDGE_ENABLED": "true",
            "AGENT_ID": agent_id or str(uuid.uuid4()),
        }
    )

    for key, attribute in _PASSTHROUGH.items():
        value = getattr(settings, attribute)
        if value:
            env[key] = value

    if config.api_key:
        if config.ai_provider is AiProvider.OPENAI:
            env["OPENAI_API_KEY"] = config.api_key
        elif config.ai_provider is AiProvider.ANTHROPIC:
            env["ANTHROPIC_API_KEY"] = config.api_key

    return [f"{key}={value}" for key, value in env.items()]


def agent_spec(
    settings: Settings,
    image: str,
    config: UserConfig,
    ports: Dict[str, int],
    agent_id: Optional[str] = None,
) -> ContainerSpec:
    """Build the agent server container spec."""
    agent_port = ports["agent"]
    return ContainerSpec(
        name=AGENT_CONTAINER,
        image=image,
        port_bindings=(PortBinding(container_port=agent_port, host_port=agent_port),),
        environment=tuple(agent_environment(settings, config, ports, agent_id)),
        volume_mounts=(
            VolumeMount("eliza-agent-data", "/app/data"),
            VolumeMount("eliza-agent-logs", "/app/logs"),
            VolumeMount("eliza-agent-knowledge", "/app/knowledge"),
        ),
        network=settings.network_name,
        memory_limit="4g",
        health_check=HealthCheckSpec(
            probe=HttpProbe(
                "/api/server/health",
                container_port=agent_port,
                accept=AGENT_HEALTH_ACCEPT,
            ),
            interval=5.0,
            timeout=5.0,
            start_period=10.0,
            retries=120,
        ),
    )
