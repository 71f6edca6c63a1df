"""Orderly teardown of the realtime link and service containers."""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Callable, List, Optional

from eliza_orchestrator.config import Settings, get_settings
from eliza_orchestrator.managers.startup_orchestrator import StartupOrchestrator
from eliza_orchestrator.utils import get_logger

logger = get_logger(__name__)


class ShutdownCoordinator:
    """
    Tears the orchestrator down once, in dependency order.

    Commands wrap their work in ``track_operation`` so a shutdown waits for them
    (up to ``drain_grace_s``) before the startup run is cancelled, the realtime
    client disconnected and the containers stopped.
    """

    def __init__(self, orchestrator: StartupOrchestrator, settings: Optional[Settings] = None) -> None:
        """
        Initialize shutdown coordinator.

        Args:
            orchestrator: Orchestrator owning the realtime client and container manager
            settings: Settings, defaults to the process-wide instance
        """
        self.orchestrator = orchestrator
        self.settings = settings or get_settings()
        self.not_stopped: List[str] = []
        self._started = False
        self._done = asyncio.Event()
        self._in_flight = 0
        self._drained = asyncio.Event()
        self._drained.set()

    def is_shutting_down(self) -> bool:
        return self._started

    @asynccontextmanager
    async def track_operation(self):
        """Mark a command as in flight for the duration of the block."""
        self._in_flight += 1
        self._drained.clear()
        try:
            yield
        finally:
            self._in_flight -= 1
            if not self._in_flight:
                self._drained.set()

    async def initiate_shutdown(self) -> None:
        """
        Run the teardown sequence; later calls return immediately.

        Order: drain in-flight commands, cancel the startup run, disconnect the
        realtime client, then stop health monitors and containers within
        ``stop_all_budget_s``. Containers still running afterwards are kept in
        ``not_stopped``.
        """
        if self._started:
            logger.debug("Teardown already in progress")
            return
        self._started = True
        logger.info("Orchestrator teardown started", extra={"in_flight": self._in_flight})

        try:
            await self._drain()
            await self.orchestrator.shutdown()
            await self.orchestrator.realtime.disconnect()
            await self._stop_containers()
        except Exception as e:
            logger.error("Teardown failed", extra={"error": str(e)})
        else:
            logger.info("Orchestrator teardown finished", extra={"not_stopped": self.not_stopped})
        finally:
            self._done.set()

    async def _drain(self) -> None:
        if self._drained.is_set():
            return
        grace = self.settings.drain_grace_s
        try:
            await asyncio.wait_for(self._drained.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(
                "Commands still running after grace period",
                extra={"grace_s": grace, "in_flight": self._in_flight},
            )

    async def _stop_containers(self) -> None:
        manager = self.orchestrator.container_manager
        if manager is None:
            return

        self.not_stopped = await manager.shutdown(timeout=self.settings.stop_all_budget_s)
        if self.not_stopped:
            logger.warning(
                "Containers left running after stop budget",
                extra={"containers": self.not_stopped, "budget_s": self.settings.stop_all_budget_s},
            )

    async def wait_for_shutdown(self) -> None:
        await self._done.wait()


def setup_signal_handlers(shutdown_handler: Callable[[], None]) -> None:
    """
    Call ``shutdown_handler`` on SIGTERM and SIGINT.

    Args:
        shutdown_handler: Zero-argument callable, typically scheduling
            ``initiate_shutdown`` on the running loop
    """

    def _on_signal(signum, frame):
        logger.info("Termination signal received", extra={"signal": signal.Signals(signum).name})
        shutdown_handler()

    for signum in (signal.SIGTERM, signal.SIGINT):
        signal.signal(signum, _on_signal)
