"""Docker implementation of the runtime adapter."""

from eliza_orchestrator.runtime.adapter import RuntimeAdapter
from eliza_orchestrator.utils.exceptions import RuntimeUnavailableError


class DockerAdapter(RuntimeAdapter):
    """Runtime adapter for the Docker CLI."""

    kind = "docker"

    async def image_exists(self, ref: str) -> bool:
        result = await self._run("images", "-q", ref, action=f"check image {ref}")
        return bool(result.stdout.strip())

    async def ensure_service(self) -> None:
        """
        Make sure the Docker daemon answers.

        Raises:
            RuntimeUnavailableError: If ``docker info`` fails
        """
        result = await self._run("info", action="query docker info", check=False)
        if result.exit_code != 0:
            raise RuntimeUnavailableError(f"docker daemon is not running: {result.stderr.strip()}")
