"""Unit tests for the command surface."""

import asyncio

import httpx
import pytest

from eliza_orchestrator.commands import WEBSOCKET_SENT, CommandSurface, resolve_container
from eliza_orchestrator.utils.exceptions import (
    AgentRequestError,
    ConnectionRecoverableError,
    InvalidArgumentError,
    NotReadyError,
)


@pytest.fixture
def surface(orchestrator, events, test_settings):
    """Command surface over the wired orchestrator."""
    return CommandSurface(orchestrator, events, settings=test_settings)


@pytest.fixture
async def ready_surface(surface, run_startup):
    """Command surface whose orchestrator reached Ready."""
    await run_startup(surface.orchestrator)
    return surface


def test_resolve_container():
    """Test service keys and container names resolve."""
    assert resolve_container("postgres") == "eliza-postgres"
    assert resolve_container("eliza-agent") == "eliza-agent"
    with pytest.raises(InvalidArgumentError):
        resolve_container("redis")


@pytest.mark.asyncio
async def test_commands_before_startup(surface):
    """Test read-only commands work and container commands are refused."""
    assert surface.get_startup_status().stage.value == "Initializing"
    assert surface.get_container_statuses() == []
    assert surface.get_setup_progress().stage == "idle"

    with pytest.raises(NotReadyError) as exc_info:
        await surface.send_message_to_agent("hello")
    assert exc_info.value.message == "System is not ready for messages yet (stage: Initializing)"

    with pytest.raises(NotReadyError):
        await surface.stop_container("postgres")


@pytest.mark.asyncio
async def test_empty_message_rejected(ready_surface):
    """Test blank messages are invalid."""
    with pytest.raises(InvalidArgumentError):
        await ready_surface.send_message_to_agent("   ")


@pytest.mark.asyncio
async def test_send_prefers_realtime(ready_surface, agent_server):
    """Test a connected realtime client delivers the message."""
    result = await ready_surface.send_message_to_agent("hello")

    assert result == WEBSOCKET_SENT
    assert agent_server.find("/api/messaging/ingest-external") == []


@pytest.mark.asyncio
async def test_send_falls_back_to_http(ready_surface, agent_server):
    """Test a disconnected realtime client falls back to ingest."""
    await ready_surface.disconnect_realtime()

    result = await ready_surface.send_message_to_agent("hello")

    assert result == "Message sent to agent: hello"
    assert len(agent_server.find("/api/messaging/ingest-external")) == 1


@pytest.mark.asyncio
async def test_send_reports_both_failures(ready_surface, agent_server):
    """Test the error when realtime and HTTP both fail."""
    await ready_surface.disconnect_realtime()
    agent_server.ingest_status = 500

    with pytest.raises(AgentRequestError) as exc_info:
        await ready_surface.send_message_to_agent("hello")

    assert exc_info.value.message.startswith("Both WebSocket and HTTP communication failed: ")
    assert exc_info.value.kind.value == "AgentRequestFailed"


@pytest.mark.asyncio
async def test_send_recovers_by_restarting_agent(ready_surface, agent_server, fake_runtime):
    """Test a refused ingest restarts the agent and retries once."""
    await ready_surface.disconnect_realtime()
    agent_server.ingest_failures.append(httpx.ConnectError("connection refused"))

    result = await ready_surface.send_message_to_agent("hello")

    assert result == "Message sent to agent: hello"
    assert ["stop", "-t", "10", "eliza-agent"] in fake_runtime.calls
    assert ["start", "eliza-agent"] in fake_runtime.calls


@pytest.mark.asyncio
async def test_container_commands(ready_surface, fake_runtime):
    """Test stop, start, restart and logs through the surface."""
    stopped = await ready_surface.stop_container("ollama")
    assert stopped["state"] == "stopped"

    started = await ready_surface.start_container("ollama")
    assert started["restart_count"] == 1

    restarted = await ready_surface.restart_container("eliza-ollama")
    assert restarted["restart_count"] == 2

    assert await ready_surface.get_container_logs("ollama", tail=10) == ["starting", "listening"]
    with pytest.raises(InvalidArgumentError):
        await ready_surface.get_container_logs("ollama", tail=0)


@pytest.mark.asyncio
async def test_stop_all_containers(ready_surface, fake_runtime):
    """Test stopping everything reports no stragglers."""
    assert await ready_surface.stop_all_containers() == []
    assert all(c["state"] == "exited" for c in fake_runtime.containers.values())


@pytest.mark.asyncio
async def test_realtime_commands(ready_surface):
    """Test disconnect, connect and channel switching."""
    status = await ready_surface.disconnect_realtime()
    assert status["state"] == "disconnected"

    status = await ready_surface.connect_realtime()
    assert status["state"] == "connected"
    assert status["url"] == "ws://127.0.0.1:7777"

    status = await ready_surface.join_channel("room-2")
    assert status["channel_id"] == "room-2"
    with pytest.raises(InvalidArgumentError):
        await ready_surface.join_channel("")


@pytest.mark.asyncio
async def test_agent_relay(ready_surface, agent_server):
    """Test relay calls reach the agent."""
    result = await ready_surface.agent_api_relay("list_agents")

    assert result["success"] is True
    assert agent_server.find("/api/agents")


@pytest.mark.asyncio
async def test_agent_relay_before_ready_fails_fast(surface):
    """Test relay calls before Ready are not recovered."""
    with pytest.raises(ConnectionRecoverableError):
        await surface.agent_api_relay("list_agents")


@pytest.mark.asyncio
async def test_health_check(surface, run_startup):
    """Test health summaries before and after startup."""
    before = await surface.health_check()
    assert before["status"] == "starting"
    assert before["agent_healthy"] is False

    await run_startup(surface.orchestrator)
    after = await surface.health_check()

    assert after["status"] == "healthy"
    assert after["runtime"] == "podman"
    assert after["realtime"]["state"] == "connected"
    assert len(after["containers"]) == 3


@pytest.mark.asyncio
async def test_poll_events_and_metrics(surface):
    """Test event polling validation and metrics text."""
    surface.start_initialization()
    await asyncio.sleep(0.05)

    result = await surface.poll_events(0, 5)
    assert result["events"][0]["event"] == "startup-status"

    with pytest.raises(InvalidArgumentError):
        await surface.poll_events(-1)
    assert "eliza_startup_stage" in surface.get_metrics()
    await surface.abort_startup()
