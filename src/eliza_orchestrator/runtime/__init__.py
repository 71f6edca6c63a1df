"""Container runtime adapters."""

from .adapter import RuntimeAdapter, parse_ps_line, parse_ps_output
from .detection import RuntimeDetector
from .docker import DockerAdapter
from .image_policy import ImagePolicy
from .podman import PodmanAdapter

__all__ = [
    "DockerAdapter",
    "ImagePolicy",
    "PodmanAdapter",
    "RuntimeAdapter",
    "RuntimeDetector",
    "parse_ps_line",
    "parse_ps_output",
]
