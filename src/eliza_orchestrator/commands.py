"""Command surface: request/response operations offered to the UI host."""

from typing import Any, Dict, List, Optional

from eliza_orchestrator.config import Settings, get_settings
from eliza_orchestrator.events import EventBus
from eliza_orchestrator.managers.container_manager import ContainerManager
from eliza_orchestrator.managers.shutdown_coordinator import ShutdownCoordinator
from eliza_orchestrator.managers.startup_orchestrator import StartupOrchestrator
from eliza_orchestrator.models import SetupProgress, StartupStage, StartupStatus, UserConfig
from eliza_orchestrator.services import SERVICE_KEYS
from eliza_orchestrator.utils import get_logger
from eliza_orchestrator.utils.exceptions import (
    InvalidArgumentError,
    NotReadyError,
    OrchestratorError,
)
from eliza_orchestrator.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

WEBSOCKET_SENT = "Message sent via WebSocket - response will arrive via real-time events"


def resolve_container(target: str) -> str:
    """
    Map a service key or container name to a container name.

    Raises:
        InvalidArgumentError: For anything outside the service catalogue
    """
    if target in SERVICE_KEYS:
        return target
    for name, service in SERVICE_KEYS.items():
        if service == target:
            return name
    raise InvalidArgumentError(
        f"unknown container: {target} (expected one of {', '.join(sorted(SERVICE_KEYS.values()))})"
    )


class CommandSurface:
    """
    Thin adapter between UI host commands and the orchestrator components.

    Every method validates its arguments, checks the startup stage where the
    command needs it and raises ``OrchestratorError`` subclasses on failure.
    """

    def __init__(
        self,
        orchestrator: StartupOrchestrator,
        events: EventBus,
        shutdown: Optional[ShutdownCoordinator] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Initialize command surface.

        Args:
            orchestrator: Startup orchestrator owning all components
            events: Event bus polled by the UI host
            shutdown: Shutdown coordinator tracking in-flight commands
            settings: Settings, defaults to the process-wide instance
        """
        self.orchestrator = orchestrator
        self.events = events
        self.settings = settings or get_settings()
        self.shutdown = shutdown or ShutdownCoordinator(orchestrator, self.settings)
        self.metrics = get_metrics_collector()

    @property
    def stage(self) -> StartupStage:
        return self.orchestrator.status.stage

    def _require_ready(self, action: str = "messages") -> None:
        if self.stage is not StartupStage.READY:
            raise NotReadyError(self.stage.value, action)

    def _require_manager(self) -> ContainerManager:
        manager = self.orchestrator.container_manager
        if manager is None:
            raise NotReadyError(self.stage.value, "container operations")
        return manager

    # Startup

    def get_startup_status(self) -> StartupStatus:
        return self.orchestrator.status

    def start_initialization(self) -> StartupStatus:
        logger.info("Initialization requested")
        return self.orchestrator.start_initialization()

    def submit_user_config(self, config: UserConfig) -> StartupStatus:
        return self.orchestrator.submit_user_config(config)

    async def abort_startup(self) -> StartupStatus:
        return await self.orchestrator.abort()

    def retry_startup(self) -> StartupStatus:
        return self.orchestrator.retry()

    def get_setup_progress(self) -> SetupProgress:
        manager = self.orchestrator.container_manager
        if manager is None:
            return SetupProgress()
        return manager.get_setup_progress()

    # Containers

    def get_container_statuses(self) -> List[Dict[str, Any]]:
        manager = self.orchestrator.container_manager
        if manager is None:
            return []
        return manager.all_statuses()

    async def start_container(self, target: str) -> Dict[str, Any]:
        """Start a catalogue container, reusing its tracked spec when there is one."""
        name = resolve_container(target)
        manager = self._require_manager()
        async with self.shutdown.track_operation():
            record = manager.get_record(name)
            spec = record.spec if record else await self.orchestrator.spec_for(name)
            started = await manager.start(spec)
        logger.info("Container started on request", extra={"container": name})
        return started.to_dict()

    async def stop_container(self, target: str) -> Dict[str, Any]:
        name = resolve_container(target)
        manager = self._require_manager()
        async with self.shutdown.track_operation():
            record = await manager.stop(name)
        if record is None:
            raise InvalidArgumentError(f"container {name} is not tracked")
        return record.to_dict()

    async def restart_container(self, target: str) -> Dict[str, Any]:
        name = resolve_container(target)
        manager = self._require_manager()
        async with self.shutdown.track_operation():
            record = await manager.restart(name)
        return record.to_dict()

    async def stop_all_containers(self) -> List[str]:
        """Stop every tracked container; returns the names that did not stop in time."""
        manager = self._require_manager()
        async with self.shutdown.track_operation():
            return await manager.stop_all(timeout=self.settings.stop_all_budget_s)

    async def get_container_logs(self, target: str, tail: int = 100) -> List[str]:
        if tail <= 0:
            raise InvalidArgumentError("tail must be positive")
        name = resolve_container(target)
        manager = self._require_manager()
        return await manager.logs(name, tail=tail)

    # Messaging

    async def send_message_to_agent(self, text: str) -> str:
        """
        Send a user message to the agent.

        The realtime socket is tried first; when it is not connected or the send
        fails, the message goes to the HTTP ingest endpoint under the recovery
        engine.

        Args:
            text: Message content

        Returns:
            Confirmation text naming the path taken

        Raises:
            NotReadyError: If startup has not reached Ready
            OrchestratorError: If both paths fail
        """
        if not text.strip():
            raise InvalidArgumentError("message must not be empty")
        self._require_ready()

        realtime = self.orchestrator.realtime
        async with self.shutdown.track_operation():
            if realtime.is_connected():
                try:
                    await realtime.send(text)
                    logger.info("Message sent via realtime", extra={"length": len(text)})
                    return WEBSOCKET_SENT
                except OrchestratorError as e:
                    logger.warning(
                        "Realtime send failed, falling back to HTTP",
                        extra={"error": e.message},
                    )

            agent_api = self.orchestrator.agent_api
            result = await self.orchestrator.recovery.execute(
                lambda: agent_api.ingest_message(text, realtime.channel_id),
                "HTTP message delivery",
            )

        if result.ok:
            self.metrics.record_message_sent("http")
            return result.value

        error = result.error
        error.message = f"Both WebSocket and HTTP communication failed: {error.message}"
        error.args = (error.message,)
        raise error

    async def connect_realtime(self, url: Optional[str] = None) -> Dict[str, Any]:
        target = url or self.orchestrator.realtime_url
        await self.orchestrator.realtime.connect(target)
        return self.orchestrator.realtime.status()

    async def disconnect_realtime(self) -> Dict[str, Any]:
        await self.orchestrator.realtime.disconnect()
        return self.orchestrator.realtime.status()

    async def join_channel(self, channel_id: str) -> Dict[str, Any]:
        if not channel_id:
            raise InvalidArgumentError("channel_id must not be empty")
        await self.orchestrator.realtime.join_channel(channel_id)
        return self.orchestrator.realtime.status()

    def realtime_status(self) -> Dict[str, Any]:
        return self.orchestrator.realtime.status()

    # Agent API

    async def agent_api_relay(
        self,
        endpoint: str,
        path_params: Optional[Dict[str, str]] = None,
        payload: Any = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Relay a pass-through command to the agent server.

        Connection-class failures restart the agent once when the system is Ready.
        """
        agent_api = self.orchestrator.agent_api
        timeout = timeout or self.settings.http_timeout_s

        async def _call() -> Any:
            return await agent_api.relay(endpoint, path_params, payload, params, timeout)

        async with self.shutdown.track_operation():
            if self.stage is not StartupStage.READY:
                return await _call()
            result = await self.orchestrator.recovery.execute(_call, f"agent API {endpoint}")
        return result.unwrap()

    # Diagnostics

    async def health_check(self) -> Dict[str, Any]:
        """Summarize runtime, agent and realtime health."""
        runtime = self.orchestrator.runtime
        agent_healthy = await self.orchestrator.agent_api.health()
        stage = self.stage
        if stage is StartupStage.ERROR:
            status = "error"
        elif stage is StartupStage.READY and agent_healthy:
            status = "degraded" if self.orchestrator.status.realtime_degraded else "healthy"
        else:
            status = "starting"
        return {
            "status": status,
            "stage": stage.value,
            "runtime": runtime.kind if runtime else None,
            "agent_healthy": agent_healthy,
            "realtime": self.orchestrator.realtime.status(),
            "containers": self.get_container_statuses(),
        }

    async def poll_events(self, after_seq: int = 0, limit: int = 500) -> Dict[str, Any]:
        if after_seq < 0 or limit <= 0:
            raise InvalidArgumentError("after_seq must be >= 0 and limit > 0")
        return await self.events.poll(after_seq=after_seq, limit=limit)

    def get_metrics(self) -> str:
        return self.metrics.get_metrics().decode("utf-8")


# Global instance
_command_surface: Optional[CommandSurface] = None


def get_command_surface() -> CommandSurface:
    """Get or create the process-wide command surface."""
    global _command_surface
    if _command_surface is None:
        settings = get_settings()
        events = EventBus()
        orchestrator = StartupOrchestrator(events, settings)
        _command_surface = CommandSurface(orchestrator, events, settings=settings)
    return _command_surface
