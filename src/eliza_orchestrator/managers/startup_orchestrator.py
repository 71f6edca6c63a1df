"""Startup stage machine: detect, configure, start, verify, attach."""

import asyncio
import time
from typing import Callable, Dict, List, Optional, Tuple

import httpx

from eliza_orchestrator.agent_api import AgentApiClient
from eliza_orchestrator.config import Settings, get_settings
from eliza_orchestrator.events import EventBus
from eliza_orchestrator.managers.container_manager import ContainerManager
from eliza_orchestrator.managers.health_prober import HealthProber
from eliza_orchestrator.managers.model_fetcher import ModelFetcher
from eliza_orchestrator.managers.port_allocator import PortAllocator
from eliza_orchestrator.managers.recovery_engine import RecoveryConfig, RecoveryEngine
from eliza_orchestrator.models import (
    AiProvider,
    ContainerSpec,
    ContainerState,
    StartupStage,
    StartupStatus,
    UserConfig,
)
from eliza_orchestrator.realtime import RealtimeClient
from eliza_orchestrator.runtime import RuntimeAdapter, RuntimeDetector
from eliza_orchestrator.services import (
    AGENT_CONTAINER,
    OLLAMA_CONTAINER,
    POSTGRES_CONTAINER,
    SERVICE_CONTAINER_PORTS,
    SERVICE_KEYS,
    agent_spec,
    ollama_spec,
    postgres_spec,
)
from eliza_orchestrator.utils import get_logger
from eliza_orchestrator.utils.exceptions import (
    InternalError,
    InvalidArgumentError,
    OperationCancelledError,
    OrchestratorError,
    UserConfigInvalidError,
)
from eliza_orchestrator.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

ManagerFactory = Callable[[RuntimeAdapter], ContainerManager]
FetcherFactory = Callable[[str], ModelFetcher]


class StartupOrchestrator:
    """
    Drives the system from nothing to Ready.

    The orchestrator is the single writer of ``StartupStatus``; every change
    replaces the snapshot and is published as a ``startup-status`` event.
    Containers started by a failed run are kept so ``retry`` resumes cheaply.
    """

    def __init__(
        self,
        events: EventBus,
        settings: Optional[Settings] = None,
        detector: Optional[RuntimeDetector] = None,
        allocator: Optional[PortAllocator] = None,
        agent_api: Optional[AgentApiClient] = None,
        realtime: Optional[RealtimeClient] = None,
        manager_factory: Optional[ManagerFactory] = None,
        fetcher_factory: Optional[FetcherFactory] = None,
        recovery: Optional[RecoveryEngine] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize startup orchestrator.

        Args:
            events: Event bus receiving status events
            settings: Settings, defaults to the process-wide instance
            detector: Runtime detector
            allocator: Port allocator
            agent_api: Agent HTTP client, retargeted once the agent port is known
            realtime: Realtime client attached after the agent is healthy
            manager_factory: Builds the container manager for a detected runtime
            fetcher_factory: Builds a model fetcher for an Ollama base URL
            recovery: Recovery engine whose container manager is set on detection
            http_transport: Optional httpx transport shared by default collaborators
        """
        self.events = events
        self.settings = settings or get_settings()
        self.detector = detector or RuntimeDetector(self.settings)
        self.allocator = allocator or PortAllocator()
        self.agent_api = agent_api or AgentApiClient(
            self.settings.api_base_url,
            timeout=self.settings.http_timeout_s,
            http_transport=http_transport,
        )
        self.realtime = realtime or RealtimeClient(
            events,
            agent_id=self.settings.agent_id,
            channel_id=self.settings.room_id,
            transport_preference=self.settings.realtime_transport,
            max_reconnect_attempts=self.settings.max_reconnect_attempts,
            http_transport=http_transport,
        )
        self.recovery = recovery or RecoveryEngine(config=RecoveryConfig.from_settings(self.settings))
        self._http_transport = http_transport
        self._manager_factory = manager_factory or self._default_manager
        self._fetcher_factory = fetcher_factory or self._default_fetcher
        self.metrics = get_metrics_collector()

        self.runtime: Optional[RuntimeAdapter] = None
        self.container_manager: Optional[ContainerManager] = None
        self.realtime_url = self.settings.websocket_url
        self.ports: Dict[str, int] = {}

        self._status = StartupStatus()
        self._config: Optional[UserConfig] = None
        self._config_waiter: Optional[asyncio.Future] = None
        self._task: Optional[asyncio.Task] = None
        self._abort_requested = False
        self._failed_container: Optional[str] = None

    def _default_manager(self, runtime: RuntimeAdapter) -> ContainerManager:
        prober = HealthProber(runtime, http_transport=self._http_transport)
        return ContainerManager(runtime, self.events, self.settings, prober=prober)

    def _default_fetcher(self, base_url: str) -> ModelFetcher:
        return ModelFetcher(
            self.events,
            base_url,
            pull_timeout=self.settings.model_pull_timeout_s,
            poll_interval=self.settings.model_poll_interval_s,
            http_transport=self._http_transport,
        )

    # Status

    @property
    def status(self) -> StartupStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def user_config(self) -> Optional[UserConfig]:
        return self._config

    def _container_statuses(self) -> Dict[str, str]:
        if self.container_manager is None:
            return dict(self._status.container_statuses)
        statuses = {}
        for name, key in SERVICE_KEYS.items():
            record = self.container_manager.get_record(name)
            if record is not None:
                statuses[key] = record.state.value
        return statuses

    async def _publish(self, status: StartupStatus) -> None:
        self._status = status
        self.metrics.set_startup_stage(status.stage.order)
        await self.events.publish("startup-status", status.to_dict())

    async def _advance(
        self, stage: StartupStage, progress: int, message: str, details: str = ""
    ) -> None:
        """Move to a stage, ignoring backward moves."""
        current = self._status.stage
        if stage is not current and not current.can_advance_to(stage):
            logger.debug(
                "Ignoring non-monotonic stage change",
                extra={"from_stage": current.value, "to_stage": stage.value},
            )
            return
        logger.info("Startup stage", extra={"stage": stage.value, "progress": progress})
        await self._publish(
            self._status.evolve(
                stage=stage,
                progress=max(self._status.progress, progress),
                message=message,
                details=details,
                container_statuses=self._container_statuses(),
            )
        )

    async def _fail(self, error: OrchestratorError) -> None:
        logger.error(
            "Startup failed",
            extra={
                "stage": self._status.stage.value,
                "kind": error.kind.value,
                "error": error.message,
                "container": self._failed_container,
            },
        )
        await self._publish(
            self._status.evolve(
                stage=StartupStage.ERROR,
                message="Startup failed",
                details=error.message,
                error=error.to_dict(),
                failed_container=self._failed_container,
                container_statuses=self._container_statuses(),
            )
        )
        if self.container_manager is not None:
            await self.container_manager.update_progress(
                "error", self._status.progress, "Startup failed", error.message
            )

    def _check_abort(self) -> None:
        if self._abort_requested:
            raise OperationCancelledError(self._status.stage.value)

    # Commands

    def start_initialization(self) -> StartupStatus:
        """Start a run unless one is in progress or the system is already up."""
        if self.is_running or self._status.stage is StartupStage.READY:
            return self._status
        if self._status.stage is StartupStage.ERROR:
            self._status = StartupStatus(message="Restarting startup")
        self._abort_requested = False
        self._failed_container = None
        self._task = asyncio.create_task(self._run(), name="startup-orchestrator")
        return self._status

    def retry(self) -> StartupStatus:
        """
        Start a fresh run after a failure, keeping already-started containers.

        Raises:
            InvalidArgumentError: If the last run did not end in Error
        """
        if not self._status.can_retry or self.is_running:
            raise InvalidArgumentError(
                f"startup can only be retried from the Error stage (stage: {self._status.stage.value})"
            )
        logger.info("Retrying startup")
        return self.start_initialization()

    async def abort(self) -> StartupStatus:
        """Cancel a run in progress; it ends in Error and containers are stopped."""
        if not self.is_running:
            return self._status
        logger.warning("Startup abort requested", extra={"stage": self._status.stage.value})
        self._abort_requested = True
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        return self._status

    def submit_user_config(self, config: UserConfig) -> StartupStatus:
        """
        Accept the user's configuration.

        Raises:
            UserConfigInvalidError: If a hosted provider has no API key
        """
        self.validate_config(config)
        self._config = config
        if self._config_waiter is not None and not self._config_waiter.done():
            self._config_waiter.set_result(config)
        logger.info(
            "User config received",
            extra={"provider": config.ai_provider.value, "local_ollama": config.use_local_ollama},
        )
        return self._status

    def validate_config(self, config: UserConfig) -> None:
        if config.ai_provider is AiProvider.OPENAI:
            if not (config.api_key or self.settings.openai_api_key):
                raise UserConfigInvalidError("OpenAI provider requires an API key (OPENAI_API_KEY)")
        elif config.ai_provider is AiProvider.ANTHROPIC:
            if not (config.api_key or self.settings.anthropic_api_key):
                raise UserConfigInvalidError(
                    "Anthropic provider requires an API key (ANTHROPIC_API_KEY)"
                )

    async def wait(self) -> StartupStatus:
        """Wait for the current run to finish."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self._status

    async def shutdown(self) -> None:
        """Cancel a run in progress without touching containers."""
        if self.is_running:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    # Run

    async def _run(self) -> None:
        started = time.monotonic()
        try:
            await self._startup()
            self.metrics.record_startup_duration(time.monotonic() - started)
        except OrchestratorError as e:
            await self._fail(e)
        except asyncio.CancelledError:
            if not self._abort_requested:
                raise
            await self._fail(OperationCancelledError(self._status.stage.value))
            if self.container_manager is not None:
                await self.container_manager.stop_all(timeout=self.settings.stop_all_budget_s)
                await self._publish(
                    self._status.evolve(container_statuses=self._container_statuses())
                )
        except Exception as e:
            logger.exception("Unexpected startup failure")
            await self._fail(InternalError(f"unexpected startup failure: {e}"))

    async def _startup(self) -> None:
        await self._advance(StartupStage.INITIALIZING, 0, "Starting up")

        if await self.agent_api.health(timeout=self.settings.existing_server_timeout_s):
            await self._attach_existing()
            return

        self._check_abort()
        await self._detect_runtime()

        self._check_abort()
        config = await self._await_config()

        self._check_abort()
        await self._advance(
            StartupStage.INITIALIZING_CONTAINERS, 25, "Initializing containers"
        )
        await self.container_manager.update_progress(
            "containers", 25, "Initializing containers", "Creating network and allocating ports"
        )
        await self.container_manager.ensure_network(self.settings.network_name)
        await self._allocate_ports(config)

        self._check_abort()
        await self._start_dependencies(config)

        self._check_abort()
        await self._start_agent(config)

        self._check_abort()
        await self._attach_realtime()
        await self._advance(StartupStage.MESSAGE_SERVER_READY, 95, "Message server ready")
        await self._advance(StartupStage.READY, 100, "Ready")
        await self.container_manager.update_progress("ready", 100, "All services ready")

    async def _attach_existing(self) -> None:
        """Use an agent server that is already healthy; no container work."""
        logger.info("Existing agent server is healthy", extra={"url": self.agent_api.base_url})
        try:
            self._install_runtime(await self.detector.detect())
        except OrchestratorError as e:
            logger.info("No runtime for recovery on existing server", extra={"error": e.message})

        await self._attach_realtime()
        await self._advance(
            StartupStage.MESSAGE_SERVER_READY, 95, "Connected to existing agent server"
        )
        await self._advance(StartupStage.READY, 100, "Ready")

    def _install_runtime(self, runtime: RuntimeAdapter) -> None:
        self.runtime = runtime
        self.container_manager = self._manager_factory(runtime)
        self.recovery.container_manager = self.container_manager

    async def _detect_runtime(self) -> None:
        await self._advance(StartupStage.DETECTING_RUNTIME, 5, "Detecting container runtime")
        if self.runtime is None or self.container_manager is None:
            runtime = await self.detector.detect()
            self._install_runtime(runtime)
        await self.runtime.ensure_service()
        await self._advance(
            StartupStage.RUNTIME_DETECTED, 10, f"Using {self.runtime.kind}", self.runtime.binary
        )

    async def _await_config(self) -> UserConfig:
        """Wait for a user config, applying the default after the prompt timeout."""
        await self._advance(
            StartupStage.PROMPTING_CONFIG, 15, "Waiting for configuration",
            "Choose an AI provider",
        )
        if self._config is None:
            loop = asyncio.get_running_loop()
            self._config_waiter = loop.create_future()
            try:
                timeout = self.settings.config_prompt_timeout_s
                self._config = await asyncio.wait_for(self._config_waiter, timeout=timeout)
            except asyncio.TimeoutError:
                logger.info("No user config received, applying defaults")
                self._config = UserConfig()
            finally:
                self._config_waiter = None

        await self._advance(
            StartupStage.CONFIG_RECEIVED, 20, "Configuration received",
            f"Provider: {self._config.ai_provider.value}",
        )
        return self._config

    async def _allocate_ports(self, config: UserConfig) -> None:
        """
        Choose host ports for the services this run needs.

        A service whose container is already running keeps the host port it
        published; only services that will be created are probed for a free port.
        """
        ports = {}
        services: List[str] = []
        if config.postgres_enabled:
            services.append("postgres")
        if config.ollama_wanted:
            services.append("ollama")
        services.append("agent")
        for service in services:
            self._failed_container = _container_for(service)
            ports[service] = await self._port_for(service)
        self._failed_container = None
        self.ports = ports
        logger.info("Ports allocated", extra={"ports": ports})

    async def _port_for(self, service: str) -> int:
        published = await self._published_port(service)
        if published is not None:
            return self.allocator.adopt(service, published)
        return self.allocator.allocate(service)

    async def _published_port(self, service: str) -> Optional[int]:
        if self.runtime is None:
            return None
        name = _container_for(service)
        observed = await self.runtime.status(name)
        if observed.state is not ContainerState.RUNNING:
            return None
        published = await self.runtime.published_ports(name)
        if service == "agent":
            # The agent listens on the same port it publishes
            return next(iter(published.values()), None)
        return published.get(SERVICE_CONTAINER_PORTS[service])

    async def _start_and_wait(self, spec: ContainerSpec) -> None:
        await self.container_manager.start(spec)
        await self._publish(self._status.evolve(container_statuses=self._container_statuses()))
        await self.container_manager.wait_for_healthy(spec.name)

    async def _postgres_gate(self) -> None:
        await self._start_and_wait(postgres_spec(self.settings, self.ports["postgres"]))

    async def _ollama_gate(self) -> None:
        await self._start_and_wait(ollama_spec(self.settings, self.ports["ollama"]))
        await self._advance(
            StartupStage.DOWNLOADING_MODELS, 50, "Downloading AI models",
            ", ".join(self.settings.required_models_list),
        )
        await self.container_manager.update_progress(
            "models", 50, "Downloading AI models", ", ".join(self.settings.required_models_list)
        )
        fetcher = self._fetcher_factory(f"http://127.0.0.1:{self.ports['ollama']}")
        await fetcher.ensure_models(self.settings.required_models_list)

    async def _start_dependencies(self, config: UserConfig) -> None:
        """
        Start postgres and ollama in parallel; both gates must pass before the agent.

        The first required failure cancels the remaining gates. Containers those
        gates already started are left running for a retry.
        """
        gates: Dict[asyncio.Task, Tuple[str, bool]] = {}
        if config.postgres_enabled:
            await self._advance(StartupStage.STARTING_DATABASE, 30, "Starting PostgreSQL database")
            await self.container_manager.update_progress("database", 30, "Starting PostgreSQL database")
            task = asyncio.create_task(self._postgres_gate(), name="postgres-gate")
            gates[task] = (POSTGRES_CONTAINER, True)
        if config.ollama_wanted:
            await self._advance(StartupStage.STARTING_OLLAMA, 40, "Starting Ollama model server")
            await self.container_manager.update_progress("ollama", 40, "Starting Ollama model server")
            task = asyncio.create_task(self._ollama_gate(), name="ollama-gate")
            gates[task] = (OLLAMA_CONTAINER, config.ollama_required)

        pending = set(gates)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
                for task in done:
                    error = task.exception()
                    if error is None:
                        continue
                    name, required = gates[task]
                    if not isinstance(error, OrchestratorError):
                        raise error
                    if required:
                        self._failed_container = name
                        raise error
                    logger.warning(
                        "Optional container failed, continuing without it",
                        extra={"container": name, "error": error.message},
                    )
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def resolve_agent_image(self) -> str:
        """Return the first agent image present locally, else the first candidate."""
        candidates = self.settings.agent_image_candidates_list
        for image in candidates:
            if await self.runtime.image_exists(image):
                return image
        return candidates[0]

    async def spec_for(self, name: str, config: Optional[UserConfig] = None) -> ContainerSpec:
        """
        Build the container spec for a catalogue container.

        Ports not allocated yet are allocated now.

        Args:
            name: Container name from the service catalogue
            config: User configuration, defaults to the last submitted one

        Raises:
            InvalidArgumentError: For a name outside the catalogue
        """
        if name not in SERVICE_KEYS:
            raise InvalidArgumentError(f"unknown container: {name}")
        config = config or self._config or UserConfig()
        service = SERVICE_KEYS[name]
        if service not in self.ports:
            self.ports[service] = await self._port_for(service)
        if name == POSTGRES_CONTAINER:
            return postgres_spec(self.settings, self.ports[service])
        if name == OLLAMA_CONTAINER:
            return ollama_spec(self.settings, self.ports[service])
        image = await self.resolve_agent_image()
        return agent_spec(self.settings, image, config, self.ports, self.settings.agent_id)

    async def _start_agent(self, config: UserConfig) -> None:
        self._failed_container = AGENT_CONTAINER
        await self._advance(StartupStage.STARTING_AGENT, 60, "Starting ElizaOS agent")
        await self.container_manager.update_progress("agent", 60, "Starting ElizaOS agent")
        spec = await self.spec_for(AGENT_CONTAINER, config)
        await self.container_manager.start(spec)

        agent_port = self.ports["agent"]
        self.agent_api.retarget(f"http://127.0.0.1:{agent_port}")
        self.realtime_url = f"ws://127.0.0.1:{agent_port}"

        await self._advance(
            StartupStage.WAITING_FOR_HEALTH, 70, "Waiting for services to become healthy"
        )
        await self.container_manager.wait_for_healthy(AGENT_CONTAINER)
        self._failed_container = None

        try:
            await self.agent_api.list_agents()
        except OrchestratorError as e:
            logger.warning("Agent presence check failed", extra={"error": e.message})

        await self._advance(StartupStage.CONTAINERS_READY, 85, "All containers ready")

    async def _attach_realtime(self) -> None:
        """Connect the realtime client; failure leaves the system degraded, not failed."""
        await self._advance(StartupStage.STARTING_MESSAGE_SERVER, 90, "Connecting to message server")
        try:
            await self.realtime.connect(self.realtime_url)
        except OrchestratorError as e:
            logger.warning(
                "Realtime connection failed, HTTP fallback only",
                extra={"url": self.realtime_url, "error": e.message},
            )
            await self._publish(self._status.evolve(realtime_degraded=True))
            return
        if self._status.realtime_degraded:
            await self._publish(self._status.evolve(realtime_degraded=False))


def _container_for(service: str) -> str:
    for name, key in SERVICE_KEYS.items():
        if key == service:
            return name
    return service
