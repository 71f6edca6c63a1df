"""Manager modules for container lifecycle, startup and recovery."""

from .container_manager import ContainerManager
from .health_prober import HealthProber
from .model_fetcher import ModelFetcher
from .port_allocator import SERVICE_PORTS, PortAllocator
from .recovery_engine import (
    ErrorClass,
    RecoveryConfig,
    RecoveryEngine,
    RecoveryResult,
    classify_error,
)
from .shutdown_coordinator import ShutdownCoordinator, setup_signal_handlers
from .startup_orchestrator import StartupOrchestrator

__all__ = [
    "SERVICE_PORTS",
    "ContainerManager",
    "ErrorClass",
    "HealthProber",
    "ModelFetcher",
    "PortAllocator",
    "RecoveryConfig",
    "RecoveryEngine",
    "RecoveryResult",
    "ShutdownCoordinator",
    "StartupOrchestrator",
    "classify_error",
    "setup_signal_handlers",
]
