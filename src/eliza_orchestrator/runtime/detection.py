"""Runtime detection: bundled binary, then PATH, then a prior download."""

import os
import shutil
import sys
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from eliza_orchestrator.config import Settings, get_settings
from eliza_orchestrator.runtime.adapter import RuntimeAdapter
from eliza_orchestrator.runtime.docker import DockerAdapter
from eliza_orchestrator.runtime.podman import PodmanAdapter
from eliza_orchestrator.utils import get_logger
from eliza_orchestrator.utils.exceptions import RuntimeUnavailableError

logger = get_logger(__name__)

_ADAPTERS = {"podman": PodmanAdapter, "docker": DockerAdapter}


class RuntimeDetector:
    """Locates a viable container runtime."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
    ) -> None:
        """
        Initialize runtime detector.

        Args:
            settings: Settings, defaults to the process-wide instance
            which: PATH lookup function
        """
        self.settings = settings or get_settings()
        self._which = which

    def _kinds(self) -> List[str]:
        if self.settings.runtime_preference == "auto":
            return ["podman", "docker"]
        return [self.settings.runtime_preference]

    @staticmethod
    def _executable(directory: Path, kind: str) -> Optional[str]:
        name = f"{kind}.exe" if sys.platform == "win32" else kind
        path = directory / name
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
        return None

    def candidates(self) -> List[Tuple[str, str]]:
        """
        List (kind, binary) pairs in search order.

        Returns:
            Bundled binaries first, then PATH, then previously downloaded binaries
        """
        found: List[Tuple[str, str]] = []
        bundled = self.settings.resource_dir / "bin"
        for kind in self._kinds():
            binary = self._executable(bundled, kind)
            if binary:
                found.append((kind, binary))
        for kind in self._kinds():
            binary = self._which(kind)
            if binary:
                found.append((kind, binary))
        for kind in self._kinds():
            binary = self._executable(self.settings.download_dir, kind)
            if binary:
                found.append((kind, binary))

        unique: List[Tuple[str, str]] = []
        for candidate in found:
            if candidate not in unique:
                unique.append(candidate)
        return unique

    def build_adapter(self, kind: str, binary: str) -> RuntimeAdapter:
        return _ADAPTERS[kind](
            binary,
            command_timeout=self.settings.runtime_command_timeout_s,
            version_timeout=self.settings.runtime_version_timeout_s,
        )

    async def detect(self) -> RuntimeAdapter:
        """
        Return the first candidate that answers ``version``.

        Returns:
            Runtime adapter bound to the detected binary

        Raises:
            RuntimeUnavailableError: If no candidate is viable
        """
        failures = []
        for kind, binary in self.candidates():
            adapter = self.build_adapter(kind, binary)
            try:
                version = await adapter.runtime_available()
            except RuntimeUnavailableError as e:
                logger.warning(
                    "Runtime candidate not viable",
                    extra={"runtime": kind, "binary": binary, "error": e.reason},
                )
                failures.append(f"{binary}: {e.reason}")
                continue

            logger.info(
                "Container runtime detected",
                extra={"runtime": kind, "binary": binary, "version": version},
            )
            return adapter

        if not failures:
            raise RuntimeUnavailableError(
                "no podman or docker binary found in bundled resources, PATH or downloads"
            )
        raise RuntimeUnavailableError("; ".join(failures))
