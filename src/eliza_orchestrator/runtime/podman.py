"""Podman implementation of the runtime adapter."""

import sys

from eliza_orchestrator.runtime.adapter import RuntimeAdapter
from eliza_orchestrator.utils import get_logger
from eliza_orchestrator.utils.exceptions import RuntimeUnavailableError

logger = get_logger(__name__)


class PodmanAdapter(RuntimeAdapter):
    """Runtime adapter for Podman, including the machine VM on macOS and Windows."""

    kind = "podman"

    async def image_exists(self, ref: str) -> bool:
        result = await self._run(
            "image", "exists", ref, action=f"check image {ref}", check=False
        )
        return result.exit_code == 0

    async def ensure_service(self) -> None:
        """
        Make sure Podman can reach its engine.

        On Linux Podman is daemonless, so a failing ``podman info`` is fatal. Elsewhere
        the engine lives in a machine VM that is started on demand.

        Raises:
            RuntimeUnavailableError: If the engine cannot be reached or started
        """
        info = await self._run(
            "info", "--format", "{{.Host.Arch}}", action="query podman info", check=False
        )
        if info.exit_code == 0:
            return

        if sys.platform.startswith("linux"):
            raise RuntimeUnavailableError(f"podman info failed: {info.stderr.strip()}")

        logger.info("Starting podman machine", extra={"reason": info.stderr.strip()})
        result = await self._run(
            "machine", "start", action="start podman machine", check=False
        )
        if result.exit_code != 0 and "already running" not in result.stderr.lower():
            raise RuntimeUnavailableError(f"podman machine start failed: {result.stderr.strip()}")
        logger.info("Podman machine running")

    async def machine_running(self) -> bool:
        """Check whether any podman machine reports as running."""
        result = await self._run(
            "machine", "list", "--format", "{{.Name}},{{.Running}}",
            action="list podman machines",
            check=False,
        )
        if result.exit_code != 0:
            return False
        for line in result.stdout.splitlines():
            _, _, running = line.partition(",")
            if running.strip().lower() == "true":
                return True
        return False
