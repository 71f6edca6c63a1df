"""Realtime transports: raw WebSocket and Socket.IO."""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

import socketio
import websockets

from eliza_orchestrator.utils import get_logger
from eliza_orchestrator.utils.exceptions import ConnectionRecoverableError

logger = get_logger(__name__)

CLIENT_TYPE = "eliza_game"

FrameHandler = Callable[[Optional[str], Any], Awaitable[None]]
CloseHandler = Callable[[Optional[BaseException]], Awaitable[None]]


def to_http_url(url: str) -> str:
    url = url.rstrip("/")
    if url.startswith("ws://"):
        return "http://" + url[len("ws://"):]
    if url.startswith("wss://"):
        return "https://" + url[len("wss://"):]
    return url


def to_ws_url(url: str) -> str:
    url = to_http_url(url)
    if url.startswith("https://"):
        url = "wss://" + url[len("https://"):]
    elif url.startswith("http://"):
        url = "ws://" + url[len("http://"):]
    return url if url.endswith("/ws") else f"{url}/ws"


def now_ms() -> int:
    return int(time.time() * 1000)


class Transport(ABC):
    """One connection to the agent's realtime endpoint."""

    name = "transport"

    def __init__(self, on_frame: FrameHandler, on_close: CloseHandler) -> None:
        """
        Initialize transport.

        Args:
            on_frame: Awaited with (event name or None, decoded frame) per inbound frame
            on_close: Awaited once when the connection drops without close()
        """
        self.on_frame = on_frame
        self.on_close = on_close
        self._closing = False

    @abstractmethod
    async def open(self, url: str) -> None:
        """Connect to the agent at ``url``."""

    @abstractmethod
    async def handshake(self, agent_id: str, channel_id: str) -> None:
        """Register with the agent and join a channel."""

    @abstractmethod
    async def send_message(self, frame: Dict[str, Any]) -> None:
        """Send an outbound message frame."""

    @abstractmethod
    async def close(self) -> None:
        """Close without triggering on_close."""


class WebSocketTransport(Transport):
    """Raw WebSocket on ``/ws`` exchanging JSON frames keyed by ``type``."""

    name = "websocket"

    def __init__(self, on_frame: FrameHandler, on_close: CloseHandler, open_timeout: float = 10.0) -> None:
        super().__init__(on_frame, on_close)
        self.open_timeout = open_timeout
        self._ws = None
        self._reader = None

    async def open(self, url: str) -> None:
        ws_url = to_ws_url(url)
        logger.info("Connecting WebSocket", extra={"url": ws_url})
        self._closing = False
        self._ws = await websockets.connect(ws_url, open_timeout=self.open_timeout)
        self._reader = asyncio.create_task(self._read_loop(), name="websocket-reader")

    async def _read_loop(self) -> None:
        error: Optional[BaseException] = None
        try:
            async for message in self._ws:
                try:
                    frame = json.loads(message)
                except ValueError:
                    logger.warning("Dropping malformed WebSocket frame", extra={"frame": str(message)[:200]})
                    continue
                await self.on_frame(None, frame)
        except websockets.ConnectionClosed as e:
            error = e
        if not self._closing:
            await self.on_close(error)

    async def _send(self, frame: Dict[str, Any]) -> None:
        if self._ws is None:
            raise ConnectionRecoverableError("WebSocket not connected")
        await self._ws.send(json.dumps(frame))

    async def handshake(self, agent_id: str, channel_id: str) -> None:
        await self._send(
            {
                "type": "connect",
                "agent_id": agent_id,
                "channel_id": channel_id,
                "client_type": CLIENT_TYPE,
                "timestamp": now_ms(),
            }
        )

    async def send_message(self, frame: Dict[str, Any]) -> None:
        await self._send(frame)

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._reader is not None:
            await self._reader
            self._reader = None


class SocketIOTransport(Transport):
    """Socket.IO client on the agent origin; reconnection is left to the caller."""

    name = "socketio"

    EVENTS = (
        "message",
        "agent_message",
        "agent-response",
        "agent_response",
        "broadcast",
        "messageBroadcast",
        "message_received",
        "error",
    )

    def __init__(self, on_frame: FrameHandler, on_close: CloseHandler, open_timeout: float = 10.0) -> None:
        super().__init__(on_frame, on_close)
        self.open_timeout = open_timeout
        self._sio: Optional[socketio.AsyncClient] = None

    def _register(self, sio: socketio.AsyncClient) -> None:
        for event in self.EVENTS:
            sio.on(event, self._handler(event))

        @sio.event
        async def connect_error(data):
            await self.on_frame(None, {"type": "error", "error": str(data)})

        @sio.event
        async def disconnect(*args):
            if not self._closing:
                await self.on_close(None)

    def _handler(self, event: str):
        async def handle(*args):
            await self.on_frame(event, args[0] if args else None)

        return handle

    async def open(self, url: str) -> None:
        http_url = to_http_url(url)
        logger.info("Connecting Socket.IO", extra={"url": http_url})
        self._closing = False
        sio = socketio.AsyncClient(reconnection=False)
        self._register(sio)
        await sio.connect(http_url, transports=["websocket", "polling"], wait_timeout=self.open_timeout)
        self._sio = sio

    async def handshake(self, agent_id: str, channel_id: str) -> None:
        if self._sio is None:
            raise ConnectionRecoverableError("Socket.IO not connected")
        await self._sio.emit(
            "join-room",
            {
                "type": "join-room",
                "payload": {"roomId": channel_id, "agentId": agent_id},
                "agent_id": agent_id,
                "channel_id": channel_id,
                "client_type": CLIENT_TYPE,
                "timestamp": now_ms(),
            },
        )

    async def send_message(self, frame: Dict[str, Any]) -> None:
        if self._sio is None:
            raise ConnectionRecoverableError("Socket.IO not connected")
        await self._sio.emit(
            "message",
            {
                **frame,
                "payload": {
                    "text": frame["content"],
                    "roomId": frame["channel_id"],
                    "authorId": "game-ui-user",
                    "authorName": frame["author"],
                    "timestamp": frame["timestamp"],
                    "metadata": {"source": frame["source"]},
                },
            },
        )

    async def close(self) -> None:
        self._closing = True
        if self._sio is not None:
            await self._sio.disconnect()
            self._sio = None
