"""Realtime messaging with the agent server."""

from .client import ConnectionState, RealtimeClient
from .dispatch import dispatch_frame, parse_message
from .transports import SocketIOTransport, Transport, WebSocketTransport

__all__ = [
    "ConnectionState",
    "RealtimeClient",
    "SocketIOTransport",
    "Transport",
    "WebSocketTransport",
    "dispatch_frame",
    "parse_message",
]
