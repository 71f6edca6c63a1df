"""Pure mapping from inbound realtime frames to UI events."""

from typing import Any, Dict, Optional, Tuple

from eliza_orchestrator.models import MessageKind, RealtimeMessage

# Socket.IO event name -> frame type used when the payload carries none
SOCKETIO_EVENT_TYPES = {
    "message": "agent_message",
    "agent_message": "agent_message",
    "agent-response": "agent_response",
    "agent_response": "agent_response",
    "broadcast": "broadcast",
    "messageBroadcast": "messageBroadcast",
    "message_received": "message_received",
    "error": "error",
}

# Frame type -> (emitted event, message kind); None drops the frame
_ROUTES: Dict[str, Optional[Tuple[str, MessageKind]]] = {
    "welcome": ("websocket-connected", MessageKind.WELCOME),
    "connect_ack": ("websocket-registered", MessageKind.CONNECT_ACK),
    "agent_message": ("agent-message", MessageKind.AGENT_MESSAGE),
    "agent_response": ("agent-message", MessageKind.AGENT_MESSAGE),
    "broadcast": ("message-broadcast", MessageKind.BROADCAST),
    "messageBroadcast": ("message-broadcast", MessageKind.BROADCAST),
    "message_received": ("message-acknowledged", MessageKind.ACK),
    "error": ("websocket-error", MessageKind.ERROR),
    "user_message": None,
}


def _first(sources: Tuple[Dict[str, Any], ...], *keys: str) -> Any:
    for source in sources:
        for key in keys:
            value = source.get(key)
            if value not in (None, ""):
                return value
    return None


def parse_message(frame: Dict[str, Any], kind: MessageKind) -> RealtimeMessage:
    """
    Build a RealtimeMessage from a frame.

    Fields are looked up in a nested ``payload`` object first, then in the frame.
    Nothing is derived from the clock, so equal frames parse to equal messages.
    """
    payload = frame.get("payload")
    sources = (payload, frame) if isinstance(payload, dict) else (frame,)

    timestamp = _first(sources, "timestamp", "createdAt")
    try:
        timestamp = int(timestamp) if timestamp is not None else 0
    except (TypeError, ValueError):
        timestamp = 0

    metadata = _first(sources, "metadata")
    content = _first(sources, "content", "text", "message", "error")
    return RealtimeMessage(
        id=str(_first(sources, "id", "messageId") or "unknown"),
        content=str(content) if content is not None else "",
        author_id=str(_first(sources, "senderId", "author_id", "authorId", "agent_id") or "unknown"),
        timestamp=timestamp,
        kind=kind,
        author_name=_first(sources, "senderName", "author", "authorName") or "ELIZA",
        channel_id=_first(sources, "channelId", "channel_id", "roomId"),
        metadata=dict(metadata) if isinstance(metadata, dict) else {},
    )


def dispatch_frame(
    frame: Any, event: Optional[str] = None
) -> Optional[Tuple[str, Dict[str, Any]]]:
    """
    Map one inbound frame to the event delivered to the UI host.

    Args:
        frame: Decoded frame; non-dict payloads are wrapped as text
        event: Socket.IO event name the frame arrived on, if any

    Returns:
        Tuple of (event name, payload), or None for dropped echoes
    """
    if not isinstance(frame, dict):
        frame = {"content": frame}

    frame_type = frame.get("type")
    if frame_type is None and event is not None:
        frame_type = SOCKETIO_EVENT_TYPES.get(event, event)

    if frame_type in _ROUTES:
        route = _ROUTES[frame_type]
        if route is None:
            return None
        name, kind = route
    else:
        name, kind = "websocket-message", MessageKind.UNKNOWN

    payload = parse_message(frame, kind).to_dict()
    payload["type"] = frame_type
    payload["raw"] = frame
    return name, payload
