"""Test configuration and fixtures."""

import asyncio
import itertools
import json
from typing import Any, Dict, List, Optional

import httpx
import pytest

from eliza_orchestrator.agent_api import AgentApiClient
from eliza_orchestrator.config import Settings
from eliza_orchestrator.events import EventBus
from eliza_orchestrator.managers import (
    ContainerManager,
    HealthProber,
    ModelFetcher,
    PortAllocator,
    RecoveryConfig,
    RecoveryEngine,
    StartupOrchestrator,
)
from eliza_orchestrator.realtime import RealtimeClient, Transport
from eliza_orchestrator.runtime import PodmanAdapter, RuntimeDetector
from eliza_orchestrator.runtime.adapter import CommandResult
from eliza_orchestrator.utils.exceptions import RuntimeCommandError

DEFAULT_IMAGES = {
    "pgvector/pgvector:pg16",
    "ollama/ollama:latest",
    "eliza-agent-server:latest",
}


async def fast_sleep(seconds: float) -> None:
    """Stand-in for asyncio.sleep that caps every delay at 10ms."""
    await asyncio.sleep(min(seconds, 0.01))


class FakeRuntime(PodmanAdapter):
    """
    In-memory container engine behind the real Podman argument handling.

    Only ``_run`` and ``_stream`` are replaced, so argument construction and
    output parsing in the adapter are exercised as in production.
    """

    def __init__(self, images=None, host_ports=None) -> None:
        super().__init__("/usr/bin/podman", command_timeout=5.0, version_timeout=1.0)
        # Host ports held by running containers; shared with the port allocator
        self.host_ports = set() if host_ports is None else host_ports
        self.images = set(DEFAULT_IMAGES if images is None else images)
        self.networks = {"podman"}
        self.volumes = set()
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.calls: List[List[str]] = []
        self.run_failures: Dict[str, str] = {}
        self.exec_exit_codes: Dict[str, int] = {}
        self.service_running = True
        self._ids = itertools.count(1)

    def commands(self, verb: str) -> List[List[str]]:
        return [call for call in self.calls if call and call[0] == verb]

    @staticmethod
    def _published(args):
        return [
            tuple(int(part) for part in value.split(":")[1:])
            for flag, value in zip(args, args[1:])
            if flag == "-p"
        ]

    def _bind(self, container):
        for host_port, _ in self._published(container["args"]):
            self.host_ports.add(host_port)

    def _release(self, container):
        for host_port, _ in self._published(container["args"]):
            self.host_ports.discard(host_port)

    def seed_container(self, name, image, ports, state="running"):
        """Register a container left behind by an earlier session."""
        args = ["-d", "--name", name]
        for host_port, container_port in ports:
            args += ["-p", f"127.0.0.1:{host_port}:{container_port}"]
        container_id = f"{next(self._ids):012x}"
        self.containers[name] = {
            "id": container_id,
            "state": state,
            "status": "Up 5 minutes" if state == "running" else "Exited (0) 1 minute ago",
            "image": image,
            "args": args + [image],
        }
        if state == "running":
            self._bind(self.containers[name])
        return container_id

    async def _run(self, *args, action, timeout=None, check=True):
        args = list(args)
        self.calls.append(args)
        await asyncio.sleep(0)
        handler = getattr(self, f"_cmd_{args[0]}")
        exit_code, stdout, stderr = handler(args[1:])
        result = CommandResult(exit_code=exit_code, stdout=stdout, stderr=stderr)
        if check and exit_code != 0:
            raise RuntimeCommandError(action, stderr, exit_code)
        return result

    async def _stream(self, *args, action):
        self.calls.append(list(args))
        if args[0] == "pull":
            yield f"Trying to pull {args[1]}..."
            self.images.add(args[1])
            yield "Writing manifest to image destination"
        else:
            yield "log line"

    def _cmd_version(self, args):
        return 0, "podman version 5.0.0\n", ""

    def _cmd_info(self, args):
        if not self.service_running:
            return 125, "", "Cannot connect to Podman socket"
        return 0, "amd64\n", ""

    def _cmd_machine(self, args):
        self.service_running = True
        return 0, "", ""

    def _cmd_network(self, args):
        if args[0] == "ls":
            return 0, "\n".join(sorted(self.networks)) + "\n", ""
        self.networks.add(args[-1])
        return 0, args[-1] + "\n", ""

    def _cmd_volume(self, args):
        if args[0] == "ls":
            return 0, "\n".join(sorted(self.volumes)) + "\n", ""
        self.volumes.add(args[-1])
        return 0, args[-1] + "\n", ""

    def _cmd_image(self, args):
        return (0 if args[-1] in self.images else 1), "", ""

    def _cmd_run(self, args):
        name = args[args.index("--name") + 1]
        image = args[-1]
        if name in self.containers:
            return 125, "", f'Error: the container name "{name}" is already in use'
        if name in self.run_failures:
            return 126, "", self.run_failures[name]
        if image not in self.images:
            return 125, "", f"Error: {image}: image not known"
        container_id = f"{next(self._ids):012x}"
        self.containers[name] = {
            "id": container_id,
            "state": "running",
            "status": "Up 1 second",
            "image": image,
            "args": args,
        }
        self._bind(self.containers[name])
        return 0, container_id + "\n", ""

    def _cmd_start(self, args):
        container = self.containers.get(args[-1])
        if container is None:
            return 125, "", f"Error: no container with name or ID {args[-1]} found"
        if container["state"] != "running":
            self._bind(container)
        container.update(state="running", status="Up 1 second")
        return 0, args[-1] + "\n", ""

    def _cmd_stop(self, args):
        container = self.containers.get(args[-1])
        if container is None:
            return 125, "", f"Error: no container with name or ID {args[-1]} found"
        if container["state"] == "running":
            self._release(container)
        container.update(state="exited", status="Exited (0) 1 second ago")
        return 0, args[-1] + "\n", ""

    def _cmd_rm(self, args):
        container = self.containers.pop(args[-1], None)
        if container is None:
            return 1, "", f"Error: no such container {args[-1]}"
        if container["state"] == "running":
            self._release(container)
        return 0, args[-1] + "\n", ""

    def _cmd_restart(self, args):
        return self._cmd_start(args)

    def _cmd_ps(self, args):
        pattern = args[args.index("--filter") + 1].split("=", 1)[1]
        lines = [
            f"{c['id']}:{name}:{c['state']}:{c['status']}"
            for name, c in self.containers.items()
            if pattern in name
        ]
        return 0, "".join(line + "\n" for line in lines), ""

    def _cmd_port(self, args):
        container = self.containers.get(args[0])
        if container is None:
            return 125, "", f"Error: no container with name or ID {args[0]} found"
        if container["state"] != "running":
            return 0, "", ""
        lines = [
            f"{container_port}/tcp -> 127.0.0.1:{host_port}"
            for host_port, container_port in self._published(container["args"])
        ]
        return 0, "".join(line + "\n" for line in lines), ""

    def _cmd_exec(self, args):
        return self.exec_exit_codes.get(args[0], 0), "", ""

    def _cmd_logs(self, args):
        return 0, "starting\nlistening\n", ""

    def _cmd_load(self, args):
        return 0, "Loaded image\n", ""


class FakeDetector(RuntimeDetector):
    """Detector whose only candidate is the fake runtime."""

    def __init__(self, settings: Settings, runtime: FakeRuntime) -> None:
        super().__init__(settings, which=lambda kind: "/usr/bin/podman" if kind == "podman" else None)
        self.runtime = runtime

    def build_adapter(self, kind, binary):
        return self.runtime


class FakeTransport(Transport):
    """Realtime transport recording frames instead of using the network."""

    name = "websocket"
    instances: List["FakeTransport"] = []
    fail_open = False

    def __init__(self, on_frame, on_close) -> None:
        super().__init__(on_frame, on_close)
        self.opened_url: Optional[str] = None
        self.handshakes: List[tuple] = []
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        FakeTransport.instances.append(self)

    async def open(self, url: str) -> None:
        if FakeTransport.fail_open:
            raise OSError("connection refused")
        self.opened_url = url

    async def handshake(self, agent_id: str, channel_id: str) -> None:
        self.handshakes.append((agent_id, channel_id))

    async def send_message(self, frame: Dict[str, Any]) -> None:
        self.sent.append(json.loads(json.dumps(frame)))

    async def close(self) -> None:
        self.closed = True


class AgentServer:
    """httpx MockTransport handler imitating the agent, Ollama and failures."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.existing_health: Optional[Dict[str, Any]] = None
        self.agent_health: Dict[str, Any] = {"success": True}
        self.models = ["llama3.2:3b", "nomic-embed-text:latest"]
        self.channels = set()
        self.ingest_failures: List[Exception] = []
        self.ingest_status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        host = request.url.host

        if host == "localhost":
            if self.existing_health is not None and path == "/api/server/health":
                return httpx.Response(200, json=self.existing_health)
            if self.existing_health is None:
                raise httpx.ConnectError("connection refused", request=request)

        if path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": m} for m in self.models]})
        if path == "/api/server/health":
            return httpx.Response(200, json=self.agent_health)
        if path == "/api/agents":
            return httpx.Response(200, json={"success": True, "data": {"agents": []}})
        if path.startswith("/api/messaging/central-channels/"):
            channel_id = path.rsplit("/", 1)[1]
            if channel_id in self.channels:
                return httpx.Response(200, json={"success": True, "data": {"id": channel_id}})
            return httpx.Response(404, json={"success": False})
        if path == "/api/messaging/central-channels" and request.method == "POST":
            self.channels.add(json.loads(request.content)["id"])
            return httpx.Response(201, json={"success": True})
        if path == "/api/messaging/ingest-external":
            if self.ingest_failures:
                raise self.ingest_failures.pop(0)
            return httpx.Response(self.ingest_status, json={"success": True})
        return httpx.Response(404, text="not found")

    def find(self, path: str, method: str = None) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.path == path and (method is None or r.method == method)
        ]


@pytest.fixture
def events():
    """Create a fresh event bus."""
    return EventBus()


@pytest.fixture
def fake_runtime(occupied_ports):
    """Create an in-memory runtime whose published ports count as occupied."""
    return FakeRuntime(host_ports=occupied_ports)


@pytest.fixture
def agent_server():
    """Create the mock agent/Ollama HTTP server."""
    return AgentServer()


@pytest.fixture
def http_transport(agent_server):
    """httpx transport routed to the mock agent server."""
    return httpx.MockTransport(agent_server)


@pytest.fixture
def test_settings(tmp_path):
    """Settings isolated from the host environment."""
    return Settings(
        resource_dir=tmp_path / "resources",
        download_dir=tmp_path / "downloads",
        config_prompt_timeout_s=0,
        realtime_transport="websocket",
        recovery_delay_s=0.01,
        drain_grace_s=0.05,
        stop_all_budget_s=2,
        openai_api_key=None,
        anthropic_api_key=None,
        ollama_server_url=None,
        model_poll_interval_s=0.01,
    )


@pytest.fixture
def fake_transport_factory():
    """Factory producing FakeTransport instances; resets recorded instances."""
    FakeTransport.instances = []
    FakeTransport.fail_open = False

    def factory(kind, on_frame, on_close):
        return FakeTransport(on_frame, on_close)

    yield factory
    FakeTransport.instances = []
    FakeTransport.fail_open = False


@pytest.fixture
def make_manager(events, test_settings, http_transport):
    """Build container managers with fast health probing."""
    managers = []

    def factory(runtime):
        prober = HealthProber(runtime, http_transport=http_transport, sleep=fast_sleep)
        manager = ContainerManager(runtime, events, test_settings, prober=prober)
        managers.append(manager)
        return manager

    yield factory


@pytest.fixture
async def container_manager(make_manager, fake_runtime):
    """Container manager over the fake runtime; monitors are stopped afterwards."""
    manager = make_manager(fake_runtime)
    yield manager
    await manager.prober.stop_all()


@pytest.fixture
def occupied_ports():
    """Host ports the allocator treats as taken, including those published by the fake runtime."""
    return set()


@pytest.fixture
async def orchestrator_factory(
    events,
    test_settings,
    fake_runtime,
    http_transport,
    make_manager,
    fake_transport_factory,
    occupied_ports,
):
    """Build fully wired orchestrators over fakes; all are torn down afterwards."""
    built = []

    def factory(settings: Optional[Settings] = None, **overrides):
        settings = settings or test_settings
        if overrides:
            settings = settings.model_copy(update=overrides)
        realtime = RealtimeClient(
            events,
            agent_id=settings.agent_id,
            channel_id=settings.room_id,
            transport_preference="websocket",
            max_reconnect_attempts=2,
            transport_factory=fake_transport_factory,
            http_transport=http_transport,
            sleep=fast_sleep,
        )
        orchestrator = StartupOrchestrator(
            events,
            settings,
            detector=FakeDetector(settings, fake_runtime),
            allocator=PortAllocator(probe=lambda port: port not in occupied_ports),
            agent_api=AgentApiClient(settings.api_base_url, http_transport=http_transport),
            realtime=realtime,
            manager_factory=make_manager,
            fetcher_factory=lambda base_url: ModelFetcher(
                events, base_url, pull_timeout=2, poll_interval=0.01, http_transport=http_transport
            ),
            recovery=RecoveryEngine(
                config=RecoveryConfig(recovery_delay=0.01, max_attempts=1), sleep=fast_sleep
            ),
            http_transport=http_transport,
        )
        built.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in built:
        await orchestrator.shutdown()
        await orchestrator.realtime.disconnect()
        if orchestrator.container_manager is not None:
            await orchestrator.container_manager.prober.stop_all()


@pytest.fixture
def orchestrator(orchestrator_factory):
    """Fully wired orchestrator over fakes."""
    return orchestrator_factory()


@pytest.fixture
def run_startup():
    """Start initialization and wait for the run to end."""

    async def run(orchestrator: StartupOrchestrator):
        orchestrator.start_initialization()
        return await asyncio.wait_for(orchestrator.wait(), timeout=10)

    return run
