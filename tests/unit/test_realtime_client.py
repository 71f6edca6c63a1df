"""Unit tests for the realtime client."""

import asyncio

import httpx
import pytest

from conftest import FakeTransport, fast_sleep
from eliza_orchestrator.realtime import ConnectionState, RealtimeClient
from eliza_orchestrator.realtime.transports import to_http_url, to_ws_url
from eliza_orchestrator.utils.exceptions import ConnectionRecoverableError

AGENT_ID = "2fbc0c27-50f4-09f2-9fe4-9dd27d76d46f"
CHANNEL = "ce5f41b4-fe24-4c01-9971-aecfed20a6bd"


@pytest.fixture
def client(events, fake_transport_factory, http_transport):
    """Realtime client over fake transports."""
    return RealtimeClient(
        events,
        agent_id=AGENT_ID,
        channel_id=CHANNEL,
        transport_preference="websocket",
        max_reconnect_attempts=2,
        transport_factory=fake_transport_factory,
        http_transport=http_transport,
        sleep=fast_sleep,
    )


async def _wait_for(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


def test_url_conversion():
    """Test origin and endpoint URL helpers."""
    assert to_http_url("ws://127.0.0.1:7777/") == "http://127.0.0.1:7777"
    assert to_http_url("wss://agent.example") == "https://agent.example"
    assert to_ws_url("http://127.0.0.1:7777") == "ws://127.0.0.1:7777/ws"
    assert to_ws_url("ws://127.0.0.1:7777/ws") == "ws://127.0.0.1:7777/ws"


@pytest.mark.asyncio
async def test_connect_performs_handshake(client, events):
    """Test connect opens the transport and joins the channel."""
    await client.connect("ws://127.0.0.1:7777")

    transport = FakeTransport.instances[-1]
    assert transport.opened_url == "ws://127.0.0.1:7777"
    assert transport.handshakes == [(AGENT_ID, CHANNEL)]
    assert client.is_connected()
    assert client.status() == {
        "state": "connected",
        "transport": "websocket",
        "url": "ws://127.0.0.1:7777",
        "channel_id": CHANNEL,
        "reconnect_attempts": 0,
    }
    event = await events.latest("websocket-connected")
    assert event.payload["channel_id"] == CHANNEL


@pytest.mark.asyncio
async def test_connect_is_idempotent_for_same_url(client):
    """Test a second connect to the same URL keeps the connection."""
    await client.connect("ws://127.0.0.1:7777")
    await client.connect("ws://127.0.0.1:7777")

    assert len(FakeTransport.instances) == 1


@pytest.mark.asyncio
async def test_connect_failure(client):
    """Test a refused connection is recoverable and leaves the client disconnected."""
    FakeTransport.fail_open = True

    with pytest.raises(ConnectionRecoverableError) as exc_info:
        await client.connect("ws://127.0.0.1:7777")

    assert "connection refused" in exc_info.value.message
    assert client.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_send_builds_outbound_frame(client):
    """Test the outbound message frame."""
    await client.connect("ws://127.0.0.1:7777")

    assert await client.send("hello") == "sent"

    frame = FakeTransport.instances[-1].sent[0]
    assert frame["type"] == "message"
    assert frame["content"] == "hello"
    assert frame["author"] == "Admin"
    assert frame["channel_id"] == CHANNEL
    assert frame["agent_id"] == AGENT_ID
    assert frame["source"] == "eliza_game"
    assert isinstance(frame["timestamp"], int)


@pytest.mark.asyncio
async def test_send_when_disconnected(client):
    """Test sending without a connection fails fast."""
    with pytest.raises(ConnectionRecoverableError) as exc_info:
        await client.send("hello")

    assert exc_info.value.message == "WebSocket not connected"


@pytest.mark.asyncio
async def test_join_channel_rehandshakes(client):
    """Test switching channels re-registers on a live connection."""
    await client.connect("ws://127.0.0.1:7777")

    await client.join_channel("room-2")

    assert FakeTransport.instances[-1].handshakes[-1] == (AGENT_ID, "room-2")
    assert client.channel_id == "room-2"
    await client.send("x")
    assert FakeTransport.instances[-1].sent[-1]["channel_id"] == "room-2"


@pytest.mark.asyncio
async def test_inbound_frames_are_published_in_order(client, events):
    """Test inbound frames become events in arrival order."""
    await client.connect("ws://127.0.0.1:7777")
    transport = FakeTransport.instances[-1]

    await transport.on_frame(None, {"type": "agent_message", "content": "one"})
    await transport.on_frame(None, {"type": "user_message", "content": "echo"})
    await transport.on_frame("messageBroadcast", {"text": "two"})

    result = await events.poll()
    routed = [(e["event"], e["payload"].get("content")) for e in result["events"]]
    assert routed[-2:] == [("agent-message", "one"), ("message-broadcast", "two")]


@pytest.mark.asyncio
async def test_reconnect_after_drop(client, events):
    """Test an unexpected close triggers a successful reconnect."""
    await client.connect("ws://127.0.0.1:7777")
    first = FakeTransport.instances[-1]

    await first.on_close(ConnectionError("connection closed"))
    await _wait_for(client.is_connected)

    assert len(FakeTransport.instances) == 2
    assert client.status()["reconnect_attempts"] == 0
    reconnecting = await events.latest("websocket-reconnecting")
    assert reconnecting.payload == {"attempt": 1, "max_attempts": 2}


@pytest.mark.asyncio
async def test_reconnect_exhaustion(client, events):
    """Test the client gives up after the configured attempts."""
    await client.connect("ws://127.0.0.1:7777")
    FakeTransport.fail_open = True

    await FakeTransport.instances[-1].on_close(None)
    await _wait_for(lambda: client.state is ConnectionState.FAILED)

    failed = await events.latest("websocket-reconnect-failed")
    assert failed.payload == {"error": "Max reconnection attempts exceeded", "attempts": 2}
    disconnected = await events.latest("websocket-disconnected")
    assert disconnected.payload == {"reason": "closed"}


@pytest.mark.asyncio
async def test_reconnect_backoff_doubles_per_attempt(events, fake_transport_factory, http_transport):
    """Test reconnects wait 2**attempt seconds and give up after the last attempt."""
    sleeps = []
    timeline = []

    async def recording_sleep(seconds):
        sleeps.append(seconds)
        timeline.append(("sleep", seconds))
        await asyncio.sleep(0)

    events.subscribe(lambda event: timeline.append(("event", event.name)))
    client = RealtimeClient(
        events,
        agent_id=AGENT_ID,
        channel_id=CHANNEL,
        transport_preference="websocket",
        max_reconnect_attempts=2,
        transport_factory=fake_transport_factory,
        http_transport=http_transport,
        sleep=recording_sleep,
    )
    await client.connect("ws://127.0.0.1:7777")
    FakeTransport.fail_open = True

    await FakeTransport.instances[-1].on_close(None)
    await _wait_for(lambda: client.state is ConnectionState.FAILED)

    assert sleeps == [2, 4]
    failed_at = timeline.index(("event", "websocket-reconnect-failed"))
    assert [entry for entry in timeline[:failed_at] if entry[0] == "sleep"] == [
        ("sleep", 2),
        ("sleep", 4),
    ]
    assert ("sleep", 8) not in timeline[failed_at:]


@pytest.mark.asyncio
async def test_disconnect_stops_reconnecting(client):
    """Test disconnect cancels a pending reconnect."""
    await client.connect("ws://127.0.0.1:7777")
    FakeTransport.fail_open = True
    await FakeTransport.instances[-1].on_close(None)

    await client.disconnect()

    assert client.state is ConnectionState.DISCONNECTED
    assert client.status()["reconnect_attempts"] == 0


@pytest.mark.asyncio
async def test_auto_transport_prefers_socketio(events, fake_transport_factory):
    """Test auto mode picks Socket.IO when the agent advertises it."""
    kinds = []

    def factory(kind, on_frame, on_close):
        kinds.append(kind)
        return fake_transport_factory(kind, on_frame, on_close)

    def handler(request):
        if request.url.path == "/socket.io/":
            return httpx.Response(200, text="0{}")
        return httpx.Response(404)

    client = RealtimeClient(
        events,
        agent_id=AGENT_ID,
        channel_id=CHANNEL,
        transport_factory=factory,
        http_transport=httpx.MockTransport(handler),
        sleep=fast_sleep,
    )
    await client.connect("ws://127.0.0.1:7777")

    assert kinds == ["socketio"]
    await client.disconnect()
