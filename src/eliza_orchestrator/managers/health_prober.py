"""Per-container liveness probing with consecutive-failure tracking."""

import asyncio
from typing import Awaitable, Callable, Dict, Optional, Tuple

import httpx

from eliza_orchestrator.models import (
    ContainerRecord,
    ContainerState,
    ExecProbe,
    HealthStatus,
    HttpProbe,
    TcpProbe,
)
from eliza_orchestrator.runtime import RuntimeAdapter
from eliza_orchestrator.utils import get_logger
from eliza_orchestrator.utils.exceptions import OrchestratorError
from eliza_orchestrator.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

HealthCallback = Callable[[ContainerRecord, str], Awaitable[None]]

class HealthProber:
    """Drives one probe loop per monitored container."""

    def __init__(
        self,
        runtime: RuntimeAdapter,
        on_change: Optional[HealthCallback] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        host: str = "127.0.0.1",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize health prober.

        Args:
            runtime: Runtime adapter used for exec probes
            on_change: Awaited with (record, detail) whenever health changes
            http_transport: Optional httpx transport for HTTP probes
            host: Address published ports are bound to
            sleep: Awaitable used between probes
        """
        self.runtime = runtime
        self.on_change = on_change
        self.host = host
        self._http_transport = http_transport
        self._sleep = sleep
        self._tasks: Dict[str, asyncio.Task] = {}
        self.metrics = get_metrics_collector()

    async def _probe_http(self, record: ContainerRecord, probe: HttpProbe, timeout: float) -> Tuple[bool, str]:
        port = record.spec.host_port_for(probe.container_port)
        url = f"http://{self.host}:{port}/{probe.path.lstrip('/')}"
        async with httpx.AsyncClient(transport=self._http_transport, timeout=timeout) as client:
            response = await client.get(url)
        if not response.is_success:
            return False, f"GET {probe.path} returned {response.status_code}"
        if not probe.accept:
            return True, "ok"
        try:
            body = response.json()
        except ValueError:
            return False, f"GET {probe.path} returned invalid JSON"
        if probe.accepts(body):
            return True, "ok"
        return False, f"GET {probe.path} body lacks expected status"

    async def _probe_tcp(self, record: ContainerRecord, probe: TcpProbe) -> Tuple[bool, str]:
        port = record.spec.host_port_for(probe.container_port)
        _, writer = await asyncio.open_connection(self.host, port)
        writer.close()
        await writer.wait_closed()
        return True, "ok"

    async def _probe_exec(self, record: ContainerRecord, probe: ExecProbe, timeout: float) -> Tuple[bool, str]:
        result = await self.runtime.exec(record.name, probe.cmd, timeout=timeout)
        if result.exit_code == 0:
            return True, "ok"
        return False, f"{probe.cmd[0]} exited {result.exit_code}: {result.stderr.strip()}"

    async def probe_once(self, record: ContainerRecord) -> Tuple[bool, str]:
        """
        Run a single probe bounded by the check timeout.

        Args:
            record: Monitored container record

        Returns:
            Tuple of (success, detail)
        """
        check = record.spec.health_check
        if check is None:
            return True, "no health check"

        probe = check.probe
        try:
            if isinstance(probe, HttpProbe):
                coro = self._probe_http(record, probe, check.timeout)
            elif isinstance(probe, TcpProbe):
                coro = self._probe_tcp(record, probe)
            else:
                coro = self._probe_exec(record, probe, check.timeout)
            return await asyncio.wait_for(coro, timeout=check.timeout)
        except asyncio.TimeoutError:
            return False, f"probe timed out after {check.timeout}s"
        except (httpx.HTTPError, OSError, OrchestratorError) as e:
            return False, str(e) or type(e).__name__

    def monitor(self, record: ContainerRecord) -> None:
        """Start (or restart) the probe loop for a record."""
        if record.spec.health_check is None:
            return
        previous = self._tasks.pop(record.name, None)
        if previous is not None:
            previous.cancel()
        self._tasks[record.name] = asyncio.create_task(
            self._probe_loop(record), name=f"health-{record.name}"
        )

    def is_monitoring(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    async def stop_monitoring(self, name: str) -> None:
        """Stop the probe loop for a container."""
        task = self._tasks.pop(name, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def stop_all(self) -> None:
        for name in list(self._tasks):
            await self.stop_monitoring(name)

    async def _notify(self, record: ContainerRecord, detail: str) -> None:
        if self.on_change is not None:
            await self.on_change(record, detail)

    async def _probe_loop(self, record: ContainerRecord) -> None:
        """Initial delay, then probe every interval until cancelled."""
        check = record.spec.health_check
        assert check is not None
        failures = 0

        await self._sleep(check.start_period)
        while True:
            healthy, detail = await self.probe_once(record)
            self.metrics.record_health_probe(record.name, healthy)

            if healthy:
                failures = 0
                if record.health is not HealthStatus.HEALTHY:
                    record.health = HealthStatus.HEALTHY
                    record.last_error = None
                    if record.state is ContainerState.STARTING:
                        record.state = ContainerState.RUNNING
                    logger.info("Container healthy", extra={"container": record.name})
                    await self._notify(record, detail)
            else:
                failures += 1
                logger.debug(
                    "Health probe failed",
                    extra={"container": record.name, "failures": failures, "detail": detail},
                )
                if failures >= check.retries and record.health is not HealthStatus.UNHEALTHY:
                    record.health = HealthStatus.UNHEALTHY
                    record.last_error = detail
                    logger.warning(
                        "Container unhealthy",
                        extra={"container": record.name, "failures": failures, "detail": detail},
                    )
                    await self._notify(record, detail)

            await self._sleep(check.interval)
