"""Restart-and-retry recovery for connection-class failures against the agent."""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Generic, Optional, TypeVar, Union

from eliza_orchestrator.config import Settings
from eliza_orchestrator.managers.container_manager import ContainerManager
from eliza_orchestrator.services import AGENT_CONTAINER
from eliza_orchestrator.utils import get_logger
from eliza_orchestrator.utils.exceptions import (
    ConnectionRecoverableError,
    InternalError,
    OrchestratorError,
)
from eliza_orchestrator.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

T = TypeVar("T")


class ErrorClass(str, Enum):
    """Classification of a failure for recovery purposes."""

    CONNECTION_REFUSED = "ConnectionRefused"
    TCP_CONNECT_ERROR = "TcpConnectError"
    CONNECTION_CLOSED = "ConnectionClosed"
    NON_RECOVERABLE = "NonRecoverable"

    @property
    def recoverable(self) -> bool:
        return self is not ErrorClass.NON_RECOVERABLE


_MARKERS = (
    ("connection refused", ErrorClass.CONNECTION_REFUSED),
    ("tcp connect error", ErrorClass.TCP_CONNECT_ERROR),
    ("connection closed", ErrorClass.CONNECTION_CLOSED),
)


def classify_error(error: Union[BaseException, str]) -> ErrorClass:
    """
    Classify an error by its message.

    This is the single place where error text is matched; callers never inspect
    messages themselves.

    Args:
        error: Exception or error string

    Returns:
        ErrorClass
    """
    text = str(error).lower()
    for marker, error_class in _MARKERS:
        if marker in text:
            return error_class
    return ErrorClass.NON_RECOVERABLE


@dataclass(frozen=True)
class RecoveryConfig:
    """Recovery behavior."""

    recovery_delay: float = 5.0
    max_attempts: int = 1
    verbose_logging: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "RecoveryConfig":
        return cls(
            recovery_delay=settings.recovery_delay_s,
            max_attempts=settings.recovery_max_attempts,
            verbose_logging=settings.recovery_verbose_logging,
        )


@dataclass
class RecoveryResult(Generic[T]):
    """Outcome of an operation run under the recovery engine."""

    value: Optional[T] = None
    error: Optional[OrchestratorError] = None
    recovery_attempted: bool = False
    recovery_succeeded: bool = False
    attempts_made: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the recorded error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def _annotate(
    error: Exception, message: str, attempts: int, recovery_attempted: bool
) -> OrchestratorError:
    if isinstance(error, OrchestratorError):
        annotated = error
    elif classify_error(error).recoverable:
        annotated = ConnectionRecoverableError(message)
    else:
        annotated = InternalError(message)
    annotated.message = message
    annotated.args = (message,)
    annotated.attempts = attempts
    annotated.recovery_attempted = recovery_attempted
    return annotated


class RecoveryEngine:
    """Runs operations and restarts the agent container on connection failures."""

    def __init__(
        self,
        container_manager: Optional[ContainerManager] = None,
        config: Optional[RecoveryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize recovery engine.

        Args:
            container_manager: Manager used to restart the agent; without one no
                recovery is attempted
            config: Recovery configuration
            sleep: Awaitable used for the stabilization delay
        """
        self.container_manager = container_manager
        self.config = config or RecoveryConfig()
        self._sleep = sleep
        self.metrics = get_metrics_collector()

    def _log(self, message: str, **extra) -> None:
        if self.config.verbose_logging:
            logger.info(message, extra=extra)
        else:
            logger.debug(message, extra=extra)

    async def execute(
        self, operation: Callable[[], Awaitable[T]], operation_name: str
    ) -> RecoveryResult[T]:
        """
        Execute an operation, recovering from connection-class failures.

        At most ``max_attempts`` extra invocations follow the first one, each after
        an agent restart and the stabilization delay.

        Args:
            operation: Zero-argument coroutine factory
            operation_name: Human-readable name used in messages

        Returns:
            RecoveryResult with either the value or an annotated error
        """
        attempts = 0
        recovery_attempted = False
        recovery_succeeded = False

        while True:
            attempts += 1
            self._log("Attempting operation", operation=operation_name, attempt=attempts)
            try:
                value = await operation()
            except Exception as e:
                error_class = classify_error(e)
                exhausted = attempts - 1 >= self.config.max_attempts
                if not error_class.recoverable or self.container_manager is None or exhausted:
                    if recovery_attempted:
                        message = f"{operation_name} failed after recovery attempt: {e}"
                    else:
                        message = f"{operation_name} failed: {e}"
                    logger.error(
                        "Operation failed",
                        extra={
                            "operation": operation_name,
                            "error_class": error_class.value,
                            "attempts": attempts,
                        },
                    )
                    return RecoveryResult(
                        error=_annotate(e, message, attempts, recovery_attempted),
                        recovery_attempted=recovery_attempted,
                        recovery_succeeded=recovery_succeeded,
                        attempts_made=attempts,
                    )

                logger.warning(
                    "Recoverable failure, restarting agent container",
                    extra={
                        "operation": operation_name,
                        "error_class": error_class.value,
                        "error": str(e),
                    },
                )
                recovery_attempted = True
                try:
                    await self.container_manager.restart(AGENT_CONTAINER)
                except OrchestratorError as restart_error:
                    self.metrics.record_recovery_attempt("failed")
                    message = (
                        f"{operation_name} failed and recovery failed: {restart_error} "
                        f"(original: {e})"
                    )
                    return RecoveryResult(
                        error=_annotate(e, message, attempts, recovery_attempted),
                        recovery_attempted=True,
                        recovery_succeeded=False,
                        attempts_made=attempts,
                    )

                recovery_succeeded = True
                self.metrics.record_recovery_attempt("succeeded")
                self._log(
                    "Agent container restarted, waiting before retry",
                    operation=operation_name,
                    delay_s=self.config.recovery_delay,
                )
                await self._sleep(self.config.recovery_delay)
                continue

            if recovery_attempted:
                self._log("Operation succeeded after recovery", operation=operation_name)
            return RecoveryResult(
                value=value,
                recovery_attempted=recovery_attempted,
                recovery_succeeded=recovery_succeeded,
                attempts_made=attempts,
            )
