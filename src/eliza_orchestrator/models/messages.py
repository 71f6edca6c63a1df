"""Messages received from the agent over the realtime channel."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class MessageKind(str, Enum):
    """Inbound frame classification."""

    WELCOME = "welcome"
    CONNECT_ACK = "connect_ack"
    AGENT_MESSAGE = "agent_message"
    BROADCAST = "broadcast"
    ACK = "ack"
    ERROR = "error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RealtimeMessage:
    """Parsed inbound message."""

    id: str
    content: str
    author_id: str
    timestamp: int
    kind: MessageKind
    author_name: Optional[str] = None
    channel_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data
