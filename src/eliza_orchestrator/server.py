"""Eliza orchestrator MCP server using FastMCP 2."""

import json
import sys
from contextlib import asynccontextmanager

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from eliza_orchestrator.command_models import (
    AgentRelayInput,
    AgentRelayOutput,
    ConnectRealtimeInput,
    ContainerInput,
    ContainerLogsInput,
    ContainerLogsOutput,
    ContainerOutput,
    ContainerStatusesOutput,
    HealthCheckOutput,
    JoinChannelInput,
    MetricsOutput,
    PollEventsInput,
    PollEventsOutput,
    RealtimeStatusOutput,
    SendMessageInput,
    SendMessageOutput,
    SetupProgressOutput,
    StartupStatusOutput,
    StopAllOutput,
    UserConfigInput,
)
from eliza_orchestrator.commands import get_command_surface, resolve_container
from eliza_orchestrator.config import get_settings
from eliza_orchestrator.models import StartupStatus
from eliza_orchestrator.utils import get_logger, setup_logging
from eliza_orchestrator.utils.exceptions import OrchestratorError

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(server):
    """Lifespan context manager for startup and shutdown tasks."""
    settings = get_settings()

    setup_logging(log_level=settings.log_level, log_format=settings.log_format)
    logger.info("Starting Eliza orchestrator server", extra={"version": "0.1.0"})

    surface = get_command_surface()
    if settings.auto_start:
        surface.start_initialization()
        logger.info("Startup initiated automatically")

    yield

    logger.info("Shutting down Eliza orchestrator server")
    try:
        await surface.shutdown.initiate_shutdown()
    except Exception as e:
        logger.warning("Shutdown coordinator failed", extra={"error": str(e)})
    logger.info("Eliza orchestrator server stopped")


mcp = FastMCP("Eliza Orchestrator", lifespan=lifespan)


def _tool_error(action: str, error: OrchestratorError) -> ToolError:
    logger.error(
        "Command failed",
        extra={"action": action, "kind": error.kind.value, "error": error.message},
    )
    return ToolError(json.dumps(error.to_dict()))


def _status_output(status: StartupStatus) -> StartupStatusOutput:
    return StartupStatusOutput(**status.to_dict())


# ========== Startup ==========


@mcp.tool()
async def get_startup_status() -> StartupStatusOutput:
    """
    Get the current startup stage, progress and container states.

    Returns:
        StartupStatusOutput snapshot
    """
    return _status_output(get_command_surface().get_startup_status())


@mcp.tool()
async def start_initialization() -> StartupStatusOutput:
    """
    Start bringing up the agent runtime; a run in progress is left alone.

    Returns:
        StartupStatusOutput at the moment the run was started
    """
    logger.info("Start initialization requested")
    return _status_output(get_command_surface().start_initialization())


@mcp.tool()
async def submit_user_config(input_data: UserConfigInput) -> StartupStatusOutput:
    """
    Submit the AI provider configuration requested during PromptingConfig.

    Args:
        input_data: Provider, optional API key and container choices

    Returns:
        StartupStatusOutput after the config was accepted
    """
    logger.info(
        "User config submitted",
        extra={"provider": input_data.ai_provider.value, "has_api_key": bool(input_data.api_key)},
    )
    try:
        status = get_command_surface().submit_user_config(input_data.to_user_config())
    except OrchestratorError as e:
        raise _tool_error("accept user config", e)
    return _status_output(status)


@mcp.tool()
async def abort_startup() -> StartupStatusOutput:
    """
    Abort a startup run; it ends in Error and containers are stopped.

    Returns:
        StartupStatusOutput after the abort
    """
    logger.warning("Startup abort requested")
    return _status_output(await get_command_surface().abort_startup())


@mcp.tool()
async def retry_startup() -> StartupStatusOutput:
    """
    Retry after a failed startup, keeping containers that already run.

    Returns:
        StartupStatusOutput of the new run
    """
    try:
        status = get_command_surface().retry_startup()
    except OrchestratorError as e:
        raise _tool_error("retry startup", e)
    return _status_output(status)


@mcp.tool()
async def get_setup_progress() -> SetupProgressOutput:
    """
    Get the container manager's setup checkpoint.

    Returns:
        SetupProgressOutput with stage, progress and timestamps
    """
    return SetupProgressOutput(**get_command_surface().get_setup_progress().to_dict())


# ========== Containers ==========


@mcp.tool()
async def get_container_statuses() -> ContainerStatusesOutput:
    """
    List tracked containers with state, health and port bindings.

    Returns:
        ContainerStatusesOutput with one record per container
    """
    return ContainerStatusesOutput(containers=get_command_surface().get_container_statuses())


@mcp.tool()
async def start_container(input_data: ContainerInput) -> ContainerOutput:
    """
    Start a service container (reuse if running, restart if stopped, else recreate).

    Args:
        input_data: Service key or container name

    Returns:
        ContainerOutput with the resulting record
    """
    logger.info("Starting container", extra={"container": input_data.container})
    try:
        record = await get_command_surface().start_container(input_data.container)
    except OrchestratorError as e:
        raise _tool_error("start container", e)
    return ContainerOutput(container=record)


@mcp.tool()
async def stop_container(input_data: ContainerInput) -> ContainerOutput:
    """
    Stop a service container.

    Args:
        input_data: Service key or container name

    Returns:
        ContainerOutput with the resulting record
    """
    logger.info("Stopping container", extra={"container": input_data.container})
    try:
        record = await get_command_surface().stop_container(input_data.container)
    except OrchestratorError as e:
        raise _tool_error("stop container", e)
    return ContainerOutput(container=record)


@mcp.tool()
async def restart_container(input_data: ContainerInput) -> ContainerOutput:
    """
    Restart a tracked service container.

    Args:
        input_data: Service key or container name

    Returns:
        ContainerOutput with the resulting record
    """
    logger.info("Restarting container", extra={"container": input_data.container})
    try:
        record = await get_command_surface().restart_container(input_data.container)
    except OrchestratorError as e:
        raise _tool_error("restart container", e)
    return ContainerOutput(container=record)


@mcp.tool()
async def stop_all_containers() -> StopAllOutput:
    """
    Stop every tracked container within the shutdown budget.

    Returns:
        StopAllOutput naming containers that did not stop in time
    """
    logger.info("Stopping all containers")
    try:
        remaining = await get_command_surface().stop_all_containers()
    except OrchestratorError as e:
        raise _tool_error("stop all containers", e)
    return StopAllOutput(not_stopped=remaining)


@mcp.tool()
async def get_container_logs(input_data: ContainerLogsInput) -> ContainerLogsOutput:
    """
    Fetch the trailing log lines of a container.

    Args:
        input_data: Container and number of lines

    Returns:
        ContainerLogsOutput with the lines
    """
    try:
        lines = await get_command_surface().get_container_logs(
            input_data.container, tail=input_data.tail
        )
        name = resolve_container(input_data.container)
    except OrchestratorError as e:
        raise _tool_error("read container logs", e)
    return ContainerLogsOutput(container=name, lines=lines)


# ========== Messaging ==========


@mcp.tool()
async def send_message_to_agent(input_data: SendMessageInput) -> SendMessageOutput:
    """
    Send a user message to the agent; responses arrive as agent-message events.

    Args:
        input_data: Message text

    Returns:
        SendMessageOutput naming the delivery path
    """
    logger.info("Sending message to agent", extra={"length": len(input_data.text)})
    try:
        result = await get_command_surface().send_message_to_agent(input_data.text)
    except OrchestratorError as e:
        raise _tool_error("send message", e)
    return SendMessageOutput(result=result)


@mcp.tool()
async def connect_realtime(input_data: ConnectRealtimeInput) -> RealtimeStatusOutput:
    """
    Connect the realtime client to the agent server.

    Args:
        input_data: Optional agent origin

    Returns:
        RealtimeStatusOutput after connecting
    """
    try:
        status = await get_command_surface().connect_realtime(input_data.url)
    except OrchestratorError as e:
        raise _tool_error("connect realtime client", e)
    return RealtimeStatusOutput(**status)


@mcp.tool()
async def disconnect_realtime() -> RealtimeStatusOutput:
    """
    Disconnect the realtime client and stop reconnecting.

    Returns:
        RealtimeStatusOutput after disconnecting
    """
    return RealtimeStatusOutput(**await get_command_surface().disconnect_realtime())


@mcp.tool()
async def join_channel(input_data: JoinChannelInput) -> RealtimeStatusOutput:
    """
    Switch the realtime client to another channel.

    Args:
        input_data: Channel UUID

    Returns:
        RealtimeStatusOutput after joining
    """
    try:
        status = await get_command_surface().join_channel(input_data.channel_id)
    except OrchestratorError as e:
        raise _tool_error("join channel", e)
    return RealtimeStatusOutput(**status)


@mcp.tool()
async def realtime_status() -> RealtimeStatusOutput:
    """
    Get the realtime connection state.

    Returns:
        RealtimeStatusOutput
    """
    return RealtimeStatusOutput(**get_command_surface().realtime_status())


@mcp.tool()
async def agent_api_relay(input_data: AgentRelayInput) -> AgentRelayOutput:
    """
    Relay a pass-through command (goals, todos, knowledge, settings...) to the agent.

    Args:
        input_data: Endpoint name, path parameters, body, query and timeout

    Returns:
        AgentRelayOutput with the decoded agent response
    """
    logger.debug("Relaying agent API call", extra={"endpoint": input_data.endpoint})
    try:
        result = await get_command_surface().agent_api_relay(
            input_data.endpoint,
            path_params=input_data.path_params,
            payload=input_data.payload,
            params=input_data.params,
            timeout=input_data.timeout_s,
        )
    except OrchestratorError as e:
        raise _tool_error(f"relay {input_data.endpoint}", e)
    return AgentRelayOutput(endpoint=input_data.endpoint, result=result)


# ========== Diagnostics ==========


@mcp.tool()
async def health_check() -> HealthCheckOutput:
    """
    Health check summarizing runtime, agent and realtime status.

    Returns:
        HealthCheckOutput
    """
    return HealthCheckOutput(**await get_command_surface().health_check())


@mcp.tool()
async def poll_events(input_data: PollEventsInput) -> PollEventsOutput:
    """
    Poll orchestrator events (progress, health, agent messages) after a cursor.

    Args:
        input_data: Cursor and limit

    Returns:
        PollEventsOutput with events and the next cursor
    """
    try:
        result = await get_command_surface().poll_events(input_data.after_seq, input_data.limit)
    except OrchestratorError as e:
        raise _tool_error("poll events", e)
    return PollEventsOutput(**result)


@mcp.tool()
async def get_metrics() -> MetricsOutput:
    """
    Get Prometheus metrics for the orchestrator.

    Returns:
        MetricsOutput with the text exposition
    """
    logger.debug("Metrics requested")
    return MetricsOutput(content=get_command_surface().get_metrics())


def main() -> None:
    """Main entry point for the Eliza orchestrator server."""
    settings = get_settings()

    setup_logging(log_level=settings.log_level, log_format=settings.log_format)

    logger.info(
        "Starting server",
        extra={
            "transport": settings.transport_mode,
            "host": settings.host if settings.transport_mode != "stdio" else "N/A",
            "port": settings.port if settings.transport_mode != "stdio" else "N/A",
            "agent_api": settings.api_base_url,
        },
    )

    try:
        transport_map = {
            "stdio": "stdio",
            "sse": "sse",
            "streamable-http": "streamable-http",
        }

        run_kwargs = {"transport": transport_map[settings.transport_mode]}
        if settings.transport_mode in ("sse", "streamable-http"):
            run_kwargs["host"] = settings.host
            run_kwargs["port"] = settings.port
            run_kwargs["path"] = settings.path

        mcp.run(**run_kwargs)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
