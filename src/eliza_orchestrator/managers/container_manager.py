"""Container lifecycle management with idempotent, per-name serialized starts."""

import asyncio
import copy
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from eliza_orchestrator.config import Settings, get_settings
from eliza_orchestrator.events import EventBus
from eliza_orchestrator.managers.health_prober import HealthProber
from eliza_orchestrator.models import (
    ContainerRecord,
    ContainerSpec,
    ContainerState,
    HealthStatus,
    SetupProgress,
)
from eliza_orchestrator.runtime import ImagePolicy, RuntimeAdapter
from eliza_orchestrator.services import BUNDLED_TARBALLS
from eliza_orchestrator.utils import get_logger
from eliza_orchestrator.utils.exceptions import (
    HealthTimeoutError,
    InternalError,
    NameConflictError,
    OrchestratorError,
    RuntimeCommandError,
)
from eliza_orchestrator.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)


class ContainerManager:
    """
    Tracks configured containers and drives their lifecycle.

    Operations on one container name are serialized by a per-name lock so that
    concurrent starts never create a second container; different names proceed
    in parallel.
    """

    def __init__(
        self,
        runtime: RuntimeAdapter,
        events: EventBus,
        settings: Optional[Settings] = None,
        prober: Optional[HealthProber] = None,
        image_policy: Optional[ImagePolicy] = None,
    ) -> None:
        """
        Initialize container manager.

        Args:
            runtime: Runtime adapter for the detected engine
            events: Event bus receiving progress and health events
            settings: Settings, defaults to the process-wide instance
            prober: Health prober, built on the runtime when omitted
            image_policy: Image policy, built from settings when omitted
        """
        self.settings = settings or get_settings()
        self.runtime = runtime
        self.events = events
        self.prober = prober or HealthProber(runtime)
        self.prober.on_change = self._on_health_change
        self.image_policy = image_policy or ImagePolicy(
            runtime,
            local_prefixes=self.settings.local_image_prefixes_list,
            allowed_registries=self.settings.allowed_registries_list,
        )
        self.metrics = get_metrics_collector()

        self._records: Dict[str, ContainerRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._health_changed = asyncio.Condition()
        self._loaded_images: Set[str] = set()
        self._log_tasks: Dict[str, asyncio.Task] = {}
        self._progress = SetupProgress()

    def _get_lock(self, name: str) -> asyncio.Lock:
        """Get or create lock for a container name."""
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    # Progress reporting

    async def update_progress(
        self, stage: str, progress: int, message: str, details: str = ""
    ) -> None:
        """
        Replace the setup progress cell and emit it.

        Args:
            stage: Checkpoint name (``error`` enables retry in the UI)
            progress: Percentage 0..100
            message: Short headline
            details: Longer explanation
        """
        self._progress = SetupProgress(
            stage=stage,
            progress=max(0, min(100, progress)),
            message=message,
            details=details,
        )
        await self.events.publish("setup-progress", self._progress.to_dict())

    def get_setup_progress(self) -> SetupProgress:
        return self._progress

    # Network and images

    async def ensure_network(self, name: str) -> None:
        await self.runtime.ensure_network(name)

    async def _publish_pull_progress(self, image: str, line: str) -> None:
        await self.events.publish("image-pull-progress", {"image": image, "line": line})

    async def _prepare_image(self, image: str) -> None:
        """Load a bundled tarball on first use, then apply the image policy."""
        if image not in self._loaded_images:
            self._loaded_images.add(image)
            tarball_name = BUNDLED_TARBALLS.get(image)
            if tarball_name:
                tarball = self.settings.resource_dir / "container-images" / tarball_name
                if tarball.is_file() and not await self.runtime.image_exists(image):
                    logger.info(
                        "Loading bundled image",
                        extra={"image": image, "tarball": str(tarball)},
                    )
                    await self.runtime.load_image(tarball)

        await self.image_policy.ensure_image(image, on_progress=self._publish_pull_progress)

    # Lifecycle

    async def _create(self, spec: ContainerSpec) -> str:
        await self._prepare_image(spec.image)
        for mount in spec.volume_mounts:
            if mount.is_named_volume:
                await self.runtime.ensure_volume(mount.source)

        try:
            return await self.runtime.create_and_start(spec)
        except NameConflictError:
            logger.warning(
                "Container name in use, recreating",
                extra={"container": spec.name},
            )
            try:
                await self.runtime.stop(spec.name)
            except RuntimeCommandError:
                pass
            await self.runtime.remove(spec.name)
            return await self.runtime.create_and_start(spec)

    def _install(
        self,
        spec: ContainerSpec,
        runtime_id: str,
        previous: Optional[ContainerRecord],
        state: ContainerState,
        started_at: Optional[datetime] = None,
    ) -> ContainerRecord:
        has_check = spec.health_check is not None
        record = ContainerRecord(
            spec=spec,
            runtime_id=runtime_id,
            state=state if has_check else ContainerState.RUNNING,
            health=HealthStatus.STARTING if has_check else HealthStatus.UNKNOWN,
            started_at=started_at or datetime.now(timezone.utc),
            restart_count=previous.restart_count + 1 if previous else 0,
        )
        self._records[spec.name] = record
        self.metrics.set_tracked_containers(len(self._records))
        self.prober.monitor(record)
        return record

    async def _start_locked(self, spec: ContainerSpec) -> ContainerRecord:
        previous = self._records.get(spec.name)
        observed = await self.runtime.status(spec.name)

        if (
            previous is not None
            and previous.runtime_id == observed.id
            and previous.spec == spec
            and observed.state in (ContainerState.RUNNING, ContainerState.STARTING)
            and previous.state in (ContainerState.RUNNING, ContainerState.STARTING)
        ):
            return previous

        if observed.state is ContainerState.RUNNING:
            logger.info("Adopting running container", extra={"container": spec.name})
            self.metrics.record_container_start(spec.name, "adopted")
            return self._install(
                spec, observed.id, previous, ContainerState.RUNNING, observed.started_at
            )

        if observed.state is ContainerState.STOPPED:
            try:
                await self.runtime.start_existing(spec.name)
                logger.info("Restarted stopped container", extra={"container": spec.name})
                self.metrics.record_container_start(spec.name, "restarted")
                return self._install(spec, observed.id, previous, ContainerState.STARTING)
            except RuntimeCommandError as e:
                logger.warning(
                    "Failed to start existing container, recreating",
                    extra={"container": spec.name, "error": str(e)},
                )
                await self.runtime.remove(spec.name)
        elif observed.state is not ContainerState.NOT_FOUND:
            logger.info(
                "Replacing container in unexpected state",
                extra={"container": spec.name, "status": observed.raw_status},
            )
            try:
                await self.runtime.stop(spec.name)
            except RuntimeCommandError:
                pass
            await self.runtime.remove(spec.name)

        runtime_id = await self._create(spec)
        logger.info(
            "Container created",
            extra={"container": spec.name, "runtime_id": runtime_id, "image": spec.image},
        )
        self.metrics.record_container_start(spec.name, "created")
        return self._install(spec, runtime_id, previous, ContainerState.STARTING)

    async def start(self, spec: ContainerSpec) -> ContainerRecord:
        """
        Idempotently start a container.

        Reuses a running container, restarts a stopped one, and recreates anything
        else. Returns once the record is installed; health is awaited separately.

        Args:
            spec: Container specification

        Returns:
            Snapshot of the installed record

        Raises:
            OrchestratorError: If the container cannot be started
        """
        async with self._get_lock(spec.name):
            try:
                record = await self._start_locked(spec)
            except OrchestratorError as e:
                previous = self._records.get(spec.name)
                self._records[spec.name] = ContainerRecord(
                    spec=spec,
                    state=ContainerState.FAILED,
                    restart_count=previous.restart_count if previous else 0,
                    last_error=e.message,
                )
                self.metrics.record_container_start(spec.name, "failed")
                logger.error(
                    "Failed to start container",
                    extra={"container": spec.name, "error": e.message},
                )
                raise
            return copy.copy(record)

    async def stop(self, name: str) -> Optional[ContainerRecord]:
        """
        Stop a container and its health monitoring.

        Args:
            name: Container name

        Returns:
            Snapshot of the record, None if the name is not tracked
        """
        async with self._get_lock(name):
            await self.prober.stop_monitoring(name)
            await self.runtime.stop(name)
            record = self._records.get(name)
            if record is None:
                return None
            record.state = ContainerState.STOPPED
            record.health = HealthStatus.UNKNOWN
            logger.info("Container stopped", extra={"container": name})
            async with self._health_changed:
                self._health_changed.notify_all()
            return copy.copy(record)

    async def remove(self, name: str) -> None:
        """Force-remove a container and forget its record."""
        async with self._get_lock(name):
            await self.prober.stop_monitoring(name)
            await self.stop_log_stream(name)
            await self.runtime.remove(name, force=True)
            self._records.pop(name, None)
            self.metrics.set_tracked_containers(len(self._records))
            logger.info("Container removed", extra={"container": name})

    async def restart(self, name: str) -> ContainerRecord:
        """
        Stop and start a tracked container with its stored spec.

        Args:
            name: Container name

        Returns:
            Snapshot of the record with an incremented restart count

        Raises:
            InternalError: If the name is not tracked
        """
        async with self._get_lock(name):
            record = self._records.get(name)
            if record is None:
                raise InternalError(f"cannot restart {name}: container is not tracked")

            await self.prober.stop_monitoring(name)
            try:
                await self.runtime.stop(name)
            except RuntimeCommandError as e:
                logger.warning(
                    "Stop before restart failed",
                    extra={"container": name, "error": str(e)},
                )
            restarted = await self._start_locked(record.spec)
            logger.info(
                "Container restarted",
                extra={"container": name, "restart_count": restarted.restart_count},
            )
            return copy.copy(restarted)

    async def stop_all(self, timeout: Optional[float] = None) -> List[str]:
        """
        Best-effort stop of every tracked container within a wall-clock budget.

        Args:
            timeout: Budget in seconds, defaults to the configured shutdown budget

        Returns:
            Names of containers that could not be stopped in time or failed
        """
        timeout = self.settings.stop_all_budget_s if timeout is None else timeout
        names = list(self._records)
        stopped: Set[str] = set()

        async def _stop_one(name: str) -> None:
            try:
                await self.stop(name)
                stopped.add(name)
            except OrchestratorError as e:
                logger.error(
                    "Failed to stop container",
                    extra={"container": name, "error": e.message},
                )

        for name in list(self._log_tasks):
            await self.stop_log_stream(name)
        try:
            await asyncio.wait_for(
                asyncio.gather(*(_stop_one(name) for name in names)), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Stop budget exhausted, leaving containers to the runtime",
                extra={"budget_s": timeout},
            )

        remaining = [name for name in names if name not in stopped]
        logger.info("Stopped containers", extra={"stopped": len(stopped), "remaining": remaining})
        return remaining

    async def shutdown(self, timeout: Optional[float] = None) -> List[str]:
        """Stop everything and drop all records."""
        remaining = await self.stop_all(timeout)
        await self.prober.stop_all()
        self._records.clear()
        self.metrics.set_tracked_containers(0)
        return remaining

    # Queries

    def get_record(self, name: str) -> Optional[ContainerRecord]:
        record = self._records.get(name)
        return copy.copy(record) if record else None

    def all_statuses(self) -> List[dict]:
        """Serialized view of every tracked record."""
        return [record.to_dict() for record in self._records.values()]

    async def refresh_status(self, name: str) -> Optional[ContainerRecord]:
        """Reconcile a record with the runtime's observed state."""
        async with self._get_lock(name):
            record = self._records.get(name)
            if record is None:
                return None
            observed = await self.runtime.status(name)
            if observed.state in (ContainerState.NOT_FOUND, ContainerState.STOPPED, ContainerState.FAILED):
                await self.prober.stop_monitoring(name)
                record.state = observed.state
                record.health = HealthStatus.UNKNOWN
            return copy.copy(record)

    # Health

    async def _on_health_change(self, record: ContainerRecord, detail: str) -> None:
        await self.events.publish(
            "container-health",
            {
                "name": record.name,
                "state": record.state.value,
                "health": record.health.value,
                "detail": detail,
            },
        )
        async with self._health_changed:
            self._health_changed.notify_all()

    async def wait_for_healthy(self, name: str, timeout: Optional[float] = None) -> ContainerRecord:
        """
        Wait until the prober reports a container healthy.

        Args:
            name: Container name
            timeout: Deadline in seconds, derived from the health check when omitted

        Returns:
            Snapshot of the healthy record

        Raises:
            HealthTimeoutError: If the container turns unhealthy or the deadline passes
            InternalError: If the name is not tracked
        """
        record = self._records.get(name)
        if record is None:
            raise InternalError(f"cannot wait for {name}: container is not tracked")
        check = record.spec.health_check
        if timeout is None and check is not None:
            timeout = check.start_period + check.retries * (check.interval + check.timeout)

        async def _wait() -> ContainerRecord:
            async with self._health_changed:
                while True:
                    current = self._records.get(name)
                    if current is None:
                        raise InternalError(f"container {name} was removed while starting")
                    if current.health is HealthStatus.HEALTHY:
                        return copy.copy(current)
                    if current.spec.health_check is None and current.state is ContainerState.RUNNING:
                        return copy.copy(current)
                    if current.health is HealthStatus.UNHEALTHY:
                        raise HealthTimeoutError(name, current.last_error or "retries exhausted")
                    if current.state in (ContainerState.STOPPED, ContainerState.FAILED):
                        raise HealthTimeoutError(name, f"container is {current.state.value}")
                    await self._health_changed.wait()

        try:
            return await asyncio.wait_for(_wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise HealthTimeoutError(name, f"not healthy after {timeout}s")

    # Logs

    async def logs(self, name: str, tail: int = 100) -> List[str]:
        return await self.runtime.logs(name, tail=tail)

    async def _follow_logs(self, name: str) -> None:
        try:
            async for line in self.runtime.logs_stream(name, follow=True):
                await self.events.publish("container-log", {"name": name, "line": line})
        except OrchestratorError as e:
            logger.warning("Log streaming ended", extra={"container": name, "error": e.message})

    def stream_logs(self, name: str) -> None:
        """Publish followed log lines of a container as ``container-log`` events."""
        if name in self._log_tasks and not self._log_tasks[name].done():
            return
        self._log_tasks[name] = asyncio.create_task(
            self._follow_logs(name), name=f"logs-{name}"
        )

    async def stop_log_stream(self, name: str) -> None:
        task = self._log_tasks.pop(name, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
