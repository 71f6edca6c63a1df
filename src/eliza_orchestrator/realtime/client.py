"""Realtime client: connection state machine, inbound fan-out and outbound send."""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from eliza_orchestrator.agent_api import AgentApiClient
from eliza_orchestrator.events import EventBus
from eliza_orchestrator.realtime.dispatch import dispatch_frame
from eliza_orchestrator.realtime.transports import (
    CLIENT_TYPE,
    CloseHandler,
    FrameHandler,
    SocketIOTransport,
    Transport,
    WebSocketTransport,
    now_ms,
    to_http_url,
)
from eliza_orchestrator.utils import get_logger
from eliza_orchestrator.utils.exceptions import ConnectionRecoverableError, OrchestratorError
from eliza_orchestrator.utils.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

TransportFactory = Callable[[str, FrameHandler, CloseHandler], Transport]

_TRANSPORTS = {"websocket": WebSocketTransport, "socketio": SocketIOTransport}


def default_transport_factory(kind: str, on_frame: FrameHandler, on_close: CloseHandler) -> Transport:
    return _TRANSPORTS[kind](on_frame, on_close)


class ConnectionState(str, Enum):
    """Realtime connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class RealtimeClient:
    """
    Event-driven connection to the agent server.

    ``connect`` and ``disconnect`` are mutually exclusive, sends are serialized,
    and inbound frames are published to the event bus in arrival order.
    """

    def __init__(
        self,
        events: EventBus,
        agent_id: str,
        channel_id: str,
        transport_preference: str = "auto",
        max_reconnect_attempts: int = 5,
        transport_factory: TransportFactory = default_transport_factory,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize realtime client.

        Args:
            events: Event bus receiving inbound events
            agent_id: Agent UUID sent in handshakes and frames
            channel_id: Channel joined on connect
            transport_preference: auto, socketio or websocket
            max_reconnect_attempts: Attempts before giving up
            transport_factory: Builds a transport for a kind
            http_transport: Optional httpx transport for the Socket.IO probe
            sleep: Awaitable used for reconnect backoff
        """
        self.events = events
        self.agent_id = agent_id
        self.transport_preference = transport_preference
        self.max_reconnect_attempts = max_reconnect_attempts
        self._channel_id = channel_id
        self._transport_factory = transport_factory
        self._http_transport = http_transport
        self._sleep = sleep
        self.metrics = get_metrics_collector()

        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[Transport] = None
        self._url: Optional[str] = None
        self._attempts = 0
        self._reconnect_task: Optional[asyncio.Task] = None
        self._connection_lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()
        self._receive_lock = asyncio.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def channel_id(self) -> str:
        return self._channel_id

    @property
    def transport_name(self) -> Optional[str]:
        return self._transport.name if self._transport else None

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "transport": self.transport_name,
            "url": self._url,
            "channel_id": self._channel_id,
            "reconnect_attempts": self._attempts,
        }

    async def _choose_transport(self, url: str) -> str:
        if self.transport_preference != "auto":
            return self.transport_preference
        probe = AgentApiClient(to_http_url(url), timeout=5.0, http_transport=self._http_transport)
        if await probe.advertises_socketio():
            return "socketio"
        return "websocket"

    async def _open(self, url: str) -> None:
        """Build a transport, connect it and perform the handshake."""
        kind = await self._choose_transport(url)
        transport = self._transport_factory(kind, self._on_frame, self._on_close)
        try:
            await transport.open(url)
            await transport.handshake(self.agent_id, self._channel_id)
        except OrchestratorError:
            raise
        except Exception as e:
            raise ConnectionRecoverableError(
                f"failed to connect {kind} to {url}: connection refused ({e})"
            )

        self._transport = transport
        self._state = ConnectionState.CONNECTED
        self._attempts = 0
        logger.info(
            "Realtime client connected",
            extra={"url": url, "transport": kind, "channel_id": self._channel_id},
        )
        await self.events.publish(
            "websocket-connected",
            {"url": url, "transport": kind, "channel_id": self._channel_id},
        )

    async def connect(self, url: str) -> None:
        """
        Connect to the agent's realtime endpoint and join the current channel.

        Args:
            url: Agent origin (http:// or ws://)

        Raises:
            ConnectionRecoverableError: If the connection cannot be established
        """
        async with self._connection_lock:
            if self._state is ConnectionState.CONNECTED and self._url == url:
                return
            await self._cancel_reconnect()
            if self._transport is not None:
                await self._transport.close()
                self._transport = None

            self._url = url
            self._state = ConnectionState.CONNECTING
            try:
                await self._open(url)
            except OrchestratorError:
                self._state = ConnectionState.DISCONNECTED
                raise

    async def disconnect(self) -> None:
        """Close the connection and stop reconnecting."""
        async with self._connection_lock:
            await self._cancel_reconnect()
            if self._transport is not None:
                await self._transport.close()
                self._transport = None
            self._state = ConnectionState.DISCONNECTED
            self._attempts = 0
            logger.info("Realtime client disconnected")

    async def join_channel(self, channel_id: str) -> None:
        """Switch to another channel, re-registering when connected."""
        self._channel_id = channel_id
        if self._transport is not None and self.is_connected():
            async with self._send_lock:
                await self._transport.handshake(self.agent_id, channel_id)
        logger.info("Joined channel", extra={"channel_id": channel_id})

    def build_outbound_frame(self, text: str) -> Dict[str, Any]:
        return {
            "type": "message",
            "content": text,
            "author": "Admin",
            "channel_id": self._channel_id,
            "agent_id": self.agent_id,
            "timestamp": now_ms(),
            "source": CLIENT_TYPE,
            "client_type": CLIENT_TYPE,
        }

    async def send(self, text: str) -> str:
        """
        Send a user message; the response arrives later as an event.

        Args:
            text: Message content

        Returns:
            ``"sent"``

        Raises:
            ConnectionRecoverableError: If not connected or the transport fails
        """
        async with self._send_lock:
            if self._transport is None or not self.is_connected():
                raise ConnectionRecoverableError("WebSocket not connected")
            frame = self.build_outbound_frame(text)
            try:
                await self._transport.send_message(frame)
            except OrchestratorError:
                raise
            except Exception as e:
                raise ConnectionRecoverableError(f"WebSocket send failed: connection closed ({e})")
            self.metrics.record_message_sent(self._transport.name)
            return "sent"

    async def _on_frame(self, event: Optional[str], frame: Any) -> None:
        routed = dispatch_frame(frame, event)
        if routed is None:
            return
        name, payload = routed
        async with self._receive_lock:
            await self.events.publish(name, payload)

    async def _on_close(self, error: Optional[BaseException]) -> None:
        logger.warning(
            "Realtime connection lost",
            extra={"error": str(error) if error else None},
        )
        self._state = ConnectionState.RECONNECTING
        self._transport = None
        await self.events.publish(
            "websocket-disconnected", {"reason": str(error) if error else "closed"}
        )
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop(), name="realtime-reconnect")

    async def _reconnect_loop(self) -> None:
        """Reconnect with 2**attempt second backoff until success or exhaustion."""
        while True:
            self._attempts += 1
            if self._attempts > self.max_reconnect_attempts:
                self._state = ConnectionState.FAILED
                logger.error(
                    "Realtime reconnection failed",
                    extra={"attempts": self.max_reconnect_attempts},
                )
                await self.events.publish(
                    "websocket-reconnect-failed",
                    {
                        "error": "Max reconnection attempts exceeded",
                        "attempts": self.max_reconnect_attempts,
                    },
                )
                return

            await self.events.publish(
                "websocket-reconnecting",
                {"attempt": self._attempts, "max_attempts": self.max_reconnect_attempts},
            )
            await self._sleep(2 ** self._attempts)

            async with self._connection_lock:
                if self._state is not ConnectionState.RECONNECTING or self._url is None:
                    return
                try:
                    await self._open(self._url)
                    return
                except ConnectionRecoverableError as e:
                    logger.warning(
                        "Reconnect attempt failed",
                        extra={"attempt": self._attempts, "error": e.message},
                    )

    async def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
