"""Error taxonomy for the Eliza orchestrator.

Every failure that crosses a component boundary is converted to one of these
classes. The ``kind`` attribute is what the command surface reports to the UI
host.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Serialized error kinds."""

    RUNTIME_UNAVAILABLE = "RuntimeUnavailable"
    RUNTIME_COMMAND_FAILED = "RuntimeCommandFailed"
    IMAGE_MISSING = "ImageMissing"
    NAME_CONFLICT = "NameConflict"
    PORT_UNAVAILABLE = "PortUnavailable"
    HEALTH_TIMEOUT = "HealthTimeout"
    CONNECTION_RECOVERABLE = "ConnectionRecoverable"
    PROTOCOL_ERROR = "ProtocolError"
    USER_CONFIG_INVALID = "UserConfigInvalid"
    NOT_READY = "NotReady"
    AGENT_REQUEST_FAILED = "AgentRequestFailed"
    AGENT_TIMEOUT = "AgentTimeout"
    INVALID_ARGUMENT = "InvalidArgument"
    CANCELLED = "Cancelled"
    INTERNAL = "Internal"


class OrchestratorError(Exception):
    """Base exception for orchestrator errors."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        attempts: int = 1,
        recovery_attempted: bool = False,
    ) -> None:
        """
        Initialize OrchestratorError.

        Args:
            message: User-visible message naming the component and action
            attempts: Number of times the failing operation was invoked
            recovery_attempted: Whether the recovery engine intervened
        """
        self.message = message
        self.attempts = attempts
        self.recovery_attempted = recovery_attempted
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the command surface."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "attempts": self.attempts,
            "recovery_attempted": self.recovery_attempted,
        }


class RuntimeUnavailableError(OrchestratorError):
    """Exception raised when no usable container runtime is found."""

    kind = ErrorKind.RUNTIME_UNAVAILABLE

    def __init__(self, reason: str) -> None:
        """
        Initialize RuntimeUnavailableError.

        Args:
            reason: Diagnostic describing what was tried
        """
        self.reason = reason
        super().__init__(
            f"container runtime unavailable: {reason}. "
            "Install Podman (https://podman.io) or Docker and try again"
        )


class RuntimeCommandError(OrchestratorError):
    """Exception raised when a runtime CLI invocation fails."""

    kind = ErrorKind.RUNTIME_COMMAND_FAILED

    def __init__(self, action: str, stderr: str, exit_code: int | None = None) -> None:
        """
        Initialize RuntimeCommandError.

        Args:
            action: Human-readable description of the attempted action
            stderr: Standard error captured from the runtime binary
            exit_code: Process exit code, None on timeout
        """
        self.action = action
        self.stderr = stderr.strip()
        self.exit_code = exit_code
        super().__init__(f"failed to {action}: {self.stderr or f'exit code {exit_code}'}")


class ImageMissingError(OrchestratorError):
    """Exception raised when a required image is not available locally."""

    kind = ErrorKind.IMAGE_MISSING

    def __init__(self, image: str, reason: str = "image not found locally") -> None:
        """
        Initialize ImageMissingError.

        Args:
            image: Image reference
            reason: Why the image cannot be provided
        """
        self.image = image
        super().__init__(f"image {image} unavailable: {reason}")


class NameConflictError(OrchestratorError):
    """Exception raised when a container name is already in use."""

    kind = ErrorKind.NAME_CONFLICT

    def __init__(self, name: str) -> None:
        """
        Initialize NameConflictError.

        Args:
            name: Conflicting container name
        """
        self.name = name
        super().__init__(f"container name {name} is already in use")


class PortUnavailableError(OrchestratorError):
    """Exception raised when no port can be allocated for a service."""

    kind = ErrorKind.PORT_UNAVAILABLE

    def __init__(
        self, service: str, range_start: int, range_end: int, default: int, fallback: int
    ) -> None:
        """
        Initialize PortUnavailableError.

        Args:
            service: Display name of the service
            range_start: First port of the search range
            range_end: Last port of the search range (inclusive)
            default: Preferred port that was tried
            fallback: Fallback port that was tried
        """
        self.service = service
        super().__init__(
            f"No available port found for {service} in range {range_start}-{range_end} "
            f"(tried default: {default}, fallback: {fallback})"
        )


class HealthTimeoutError(OrchestratorError):
    """Exception raised when a container does not become healthy."""

    kind = ErrorKind.HEALTH_TIMEOUT

    def __init__(self, name: str, detail: str) -> None:
        """
        Initialize HealthTimeoutError.

        Args:
            name: Container name
            detail: Last probe failure or timeout description
        """
        self.name = name
        super().__init__(f"container {name} failed health verification: {detail}")


class ConnectionRecoverableError(OrchestratorError):
    """Exception raised for connection-class failures the recovery engine may retry."""

    kind = ErrorKind.CONNECTION_RECOVERABLE


class ProtocolError(OrchestratorError):
    """Exception raised for malformed payloads from the agent or Ollama."""

    kind = ErrorKind.PROTOCOL_ERROR


class UserConfigInvalidError(OrchestratorError):
    """Exception raised when a submitted user configuration is unusable."""

    kind = ErrorKind.USER_CONFIG_INVALID


class NotReadyError(OrchestratorError):
    """Exception raised when a command needs a Ready system."""

    kind = ErrorKind.NOT_READY

    def __init__(self, stage: str, action: str = "messages") -> None:
        """
        Initialize NotReadyError.

        Args:
            stage: Current startup stage
            action: What the caller tried to do
        """
        self.stage = stage
        super().__init__(f"System is not ready for {action} yet (stage: {stage})")


class AgentTimeoutError(OrchestratorError):
    """Exception raised when the agent server does not answer in time."""

    kind = ErrorKind.AGENT_TIMEOUT


class AgentRequestError(OrchestratorError):
    """Exception raised when the agent server answers with a non-2xx status."""

    kind = ErrorKind.AGENT_REQUEST_FAILED

    def __init__(self, status_code: int, body: str) -> None:
        """
        Initialize AgentRequestError.

        Args:
            status_code: HTTP status code
            body: Response body text
        """
        self.status_code = status_code
        self.body = body
        super().__init__(f"Agent responded with status: {status_code} - {body}")


class OperationCancelledError(OrchestratorError):
    """Exception raised when the user aborts startup."""

    kind = ErrorKind.CANCELLED

    def __init__(self, stage: str) -> None:
        """
        Initialize OperationCancelledError.

        Args:
            stage: Stage at which the abort was observed
        """
        self.stage = stage
        super().__init__(f"startup aborted by user during {stage}")


class InternalError(OrchestratorError):
    """Exception raised on invariant violations and unparseable runtime output."""

    kind = ErrorKind.INTERNAL


class InvalidArgumentError(OrchestratorError):
    """Exception raised when a command receives unusable arguments."""

    kind = ErrorKind.INVALID_ARGUMENT
