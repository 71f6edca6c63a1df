"""Unit tests for settings."""

import pytest
from pydantic import ValidationError

from eliza_orchestrator.config import Settings, get_settings
from eliza_orchestrator.config.settings import DEFAULT_AGENT_ID, DEFAULT_ROOM_ID


def test_defaults(monkeypatch):
    """Test default values used by the startup sequence."""
    for var in ("ELIZA_AGENT_ID", "ELIZA_ROOM_ID", "ELIZA_API_BASE_URL", "ELIZA_WEBSOCKET_URL"):
        monkeypatch.delenv(var, raising=False)
    settings = Settings(_env_file=None)

    assert settings.agent_id == DEFAULT_AGENT_ID
    assert settings.room_id == DEFAULT_ROOM_ID
    assert settings.api_base_url == "http://localhost:7777"
    assert settings.websocket_url == "ws://localhost:7777"
    assert settings.network_name == "eliza-network"
    assert settings.required_models_list == ["llama3.2:3b", "nomic-embed-text"]
    assert settings.recovery_delay_s == 5.0
    assert settings.recovery_max_attempts == 1
    assert settings.max_reconnect_attempts == 5
    assert settings.model_pull_timeout_s == 600.0
    assert settings.transport_mode == "stdio"


def test_prefixed_environment(monkeypatch):
    """Test ELIZA_ prefixed variables are read."""
    monkeypatch.setenv("ELIZA_AGENT_ID", "agent-123")
    monkeypatch.setenv("ELIZA_API_BASE_URL", "http://10.0.0.5:7777")
    monkeypatch.setenv("ELIZA_ALLOWED_REGISTRIES", "docker.io, ghcr.io ,")

    settings = Settings(_env_file=None)

    assert settings.agent_id == "agent-123"
    assert settings.api_base_url == "http://10.0.0.5:7777"
    assert settings.allowed_registries_list == ["docker.io", "ghcr.io"]


def test_host_keys_without_prefix(monkeypatch):
    """Test provider keys are read from their conventional names."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("OLLAMA_SERVER_URL", "http://ollama.lan:11434")

    settings = Settings(_env_file=None)

    assert settings.openai_api_key == "sk-test"
    assert settings.ollama_server_url == "http://ollama.lan:11434"


def test_empty_identifier_rejected():
    """Test identifiers must not be blank."""
    with pytest.raises(ValidationError):
        Settings(_env_file=None, agent_id="   ")


def test_settings_are_frozen():
    """Test settings cannot be mutated after creation."""
    settings = Settings(_env_file=None)
    with pytest.raises(ValidationError):
        settings.agent_id = "other"


def test_get_settings_is_cached():
    """Test get_settings returns one process-wide instance."""
    assert get_settings() is get_settings()
