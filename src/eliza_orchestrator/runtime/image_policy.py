"""Image policy: local-only references versus pullable references."""

from typing import Awaitable, Callable, List, Optional

from eliza_orchestrator.runtime.adapter import RuntimeAdapter
from eliza_orchestrator.utils import get_logger
from eliza_orchestrator.utils.exceptions import ImageMissingError, RuntimeCommandError

logger = get_logger(__name__)

ProgressCallback = Callable[[str, str], Awaitable[None]]


class ImagePolicy:
    """Decides whether an image may be pulled and pulls it when needed."""

    def __init__(
        self,
        runtime: RuntimeAdapter,
        local_prefixes: List[str],
        allowed_registries: List[str],
    ) -> None:
        """
        Initialize image policy.

        Args:
            runtime: Runtime adapter used for existence checks and pulls
            local_prefixes: Reference prefixes that are never pulled
            allowed_registries: Registries pullable references may come from
        """
        self.runtime = runtime
        self._local_prefixes = local_prefixes
        self._allowed_registries = allowed_registries

    def is_assumed_local(self, image_ref: str) -> bool:
        """Check if a reference is built locally and must never be pulled."""
        return any(image_ref.startswith(prefix) for prefix in self._local_prefixes)

    def _extract_registry(self, image_ref: str) -> str:
        """
        Extract registry from image reference.

        Args:
            image_ref: Image reference (e.g., "docker.io/ollama/ollama", "postgres:16")

        Returns:
            Registry host (e.g., "docker.io")
        """
        if "/" not in image_ref:
            return "docker.io"

        first = image_ref.split("/")[0]
        if "." in first or ":" in first or first == "localhost":
            return first
        return "docker.io"

    def _normalize_image_ref(self, image_ref: str) -> str:
        """
        Normalize image reference to include registry.

        Args:
            image_ref: Image reference

        Returns:
            Normalized image reference
        """
        if "/" not in image_ref:
            return f"docker.io/library/{image_ref}"

        first = image_ref.split("/")[0]
        if "." not in first and ":" not in first and first != "localhost":
            return f"docker.io/{image_ref}"

        return image_ref

    async def ensure_image(
        self, image_ref: str, on_progress: Optional[ProgressCallback] = None
    ) -> None:
        """
        Ensure an image is present, pulling it when policy allows.

        Args:
            image_ref: Image reference from the container spec
            on_progress: Awaited with (image, line) for each pull progress line

        Raises:
            ImageMissingError: If a local-only image is absent, the registry is not
                allowed or the pull fails
        """
        if await self.runtime.image_exists(image_ref):
            logger.debug("Image already present locally", extra={"image": image_ref})
            return

        if self.is_assumed_local(image_ref):
            raise ImageMissingError(
                image_ref, "image not found locally and local images are never pulled"
            )

        normalized = self._normalize_image_ref(image_ref)
        registry = self._extract_registry(normalized)
        if registry not in self._allowed_registries:
            raise ImageMissingError(
                image_ref,
                f"registry '{registry}' is not in allow-list "
                f"({', '.join(self._allowed_registries)})",
            )

        logger.info("Pulling image", extra={"image": normalized})
        try:
            async for line in self.runtime.pull(normalized):
                if on_progress and line:
                    await on_progress(image_ref, line)
        except RuntimeCommandError as e:
            raise ImageMissingError(image_ref, f"pull failed: {e.stderr or e.message}")
        logger.info("Image pulled successfully", extra={"image": normalized})
