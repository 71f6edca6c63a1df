"""HTTP client for the agent server API."""

from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from eliza_orchestrator.models.containers import json_lookup
from eliza_orchestrator.services import AGENT_HEALTH_ACCEPT
from eliza_orchestrator.utils import get_logger
from eliza_orchestrator.utils.exceptions import (
    AgentRequestError,
    AgentTimeoutError,
    ConnectionRecoverableError,
    InvalidArgumentError,
    OrchestratorError,
    ProtocolError,
)

logger = get_logger(__name__)

GAME_SERVER_ID = "00000000-0000-0000-0000-000000000000"
GAME_AUTHOR_ID = "00000000-0000-0000-0000-000000000001"
GAME_AUTHOR_NAME = "Admin"
GAME_SOURCE = "eliza_game"

# Relay name -> (method, path template)
RELAY_ENDPOINTS: Dict[str, tuple[str, str]] = {
    "toggle_autonomy": ("POST", "/api/autonomy/toggle"),
    "autonomy_status": ("GET", "/api/autonomy/status"),
    "toggle_capability": ("POST", "/api/capabilities/{capability}/toggle"),
    "capability_status": ("GET", "/api/capabilities/{capability}/status"),
    "update_agent_settings": ("POST", "/api/agent/settings"),
    "agent_settings": ("GET", "/api/agent/settings"),
    "vision_frame": ("POST", "/api/vision/frame"),
    "audio_stream": ("POST", "/api/audio/stream"),
    "start_vision_capture": ("POST", "/api/vision/capture/start"),
    "stop_vision_capture": ("POST", "/api/vision/capture/stop"),
    "reset_agent": ("POST", "/api/agent/reset"),
    "list_goals": ("GET", "/api/goals"),
    "create_goal": ("POST", "/api/goals"),
    "list_todos": ("GET", "/api/todos"),
    "create_todo": ("POST", "/api/todos"),
    "list_knowledge": ("GET", "/api/knowledge"),
    "upload_knowledge": ("POST", "/api/knowledge/upload"),
    "delete_knowledge": ("DELETE", "/api/knowledge/{document_id}"),
    "list_memories": ("GET", "/api/memories"),
    "plugin_configs": ("GET", "/api/plugins/configs"),
    "update_plugin_config": ("PUT", "/api/plugins/{plugin}/config"),
    "logs": ("GET", "/api/logs"),
    "list_agents": ("GET", "/api/agents"),
}


def _path_segments(path_params: Dict[str, str]) -> Dict[str, str]:
    """Quote each value as a single path segment."""
    segments = {}
    for key, value in path_params.items():
        value = str(value)
        if value in ("", ".", ".."):
            raise InvalidArgumentError(f"invalid value for path parameter {key}: {value!r}")
        segments[key] = quote(value, safe="")
    return segments


class AgentApiClient:
    """Thin async client over the agent server's documented HTTP surface."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize agent API client.

        Args:
            base_url: Agent server base URL (e.g. http://localhost:7777)
            timeout: Default per-request timeout in seconds
            http_transport: Optional httpx transport
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_transport = http_transport

    def retarget(self, base_url: str) -> None:
        """Point the client at a different agent address."""
        self.base_url = base_url.rstrip("/")
        logger.info("Agent API retargeted", extra={"base_url": self.base_url})

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send a request and decode the response.

        Args:
            method: HTTP method
            path: Path below the base URL
            json: JSON body
            params: Query parameters
            timeout: Override of the default timeout

        Returns:
            Decoded JSON body, or text for non-JSON responses

        Raises:
            ConnectionRecoverableError: On refused or dropped connections
            AgentTimeoutError: When the agent does not answer in time
            AgentRequestError: On a non-2xx status
            ProtocolError: On a malformed JSON body or another transport failure
        """
        target = f"{method} {path}"
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                transport=self._http_transport,
                timeout=timeout or self.timeout,
            ) as client:
                response = await client.request(method, path, json=json, params=params)
        except httpx.ConnectError as e:
            raise ConnectionRecoverableError(f"{target}: tcp connect error: {e}")
        except (httpx.RemoteProtocolError, httpx.ReadError) as e:
            raise ConnectionRecoverableError(f"{target}: connection closed: {e}")
        except httpx.TimeoutException:
            raise AgentTimeoutError(f"{target}: timed out after {timeout or self.timeout}s")
        except httpx.HTTPError as e:
            raise ProtocolError(f"{target}: {e}")

        if not response.is_success:
            raise AgentRequestError(response.status_code, response.text)

        if "json" not in response.headers.get("content-type", ""):
            return response.text
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"{target} returned malformed JSON: {e}")

    async def health(self, timeout: Optional[float] = None) -> bool:
        """
        Check ``/api/server/health``.

        Returns:
            True if the agent answered 2xx with an accepted status body
        """
        try:
            body = await self.request("GET", "/api/server/health", timeout=timeout)
        except OrchestratorError as e:
            logger.debug("Agent health check failed", extra={"error": str(e)})
            return False
        return any(json_lookup(body, key) == expected for key, expected in AGENT_HEALTH_ACCEPT)

    async def advertises_socketio(self) -> bool:
        """Probe the Engine.IO polling handshake on the agent origin."""
        try:
            await self.request(
                "GET",
                "/socket.io/",
                params={"EIO": "4", "transport": "polling"},
                timeout=min(self.timeout, 5.0),
            )
        except OrchestratorError:
            return False
        return True

    async def list_agents(self) -> Any:
        return await self.request("GET", "/api/agents")

    async def ensure_channel(self, channel_id: str) -> None:
        """Create the central channel unless the agent already knows it."""
        try:
            await self.request("GET", f"/api/messaging/central-channels/{channel_id}")
            return
        except AgentRequestError as e:
            logger.info(
                "Channel not found, creating",
                extra={"channel_id": channel_id, "status_code": e.status_code},
            )

        await self.request(
            "POST",
            "/api/messaging/central-channels",
            json={
                "id": channel_id,
                "server_id": GAME_SERVER_ID,
                "name": "Game UI Channel",
                "type": "game",
                "metadata": {"source": GAME_SOURCE},
            },
        )

    async def ingest_message(self, content: str, channel_id: str) -> str:
        """
        Deliver a user message through the ingest endpoint.

        Args:
            content: Message text
            channel_id: Target channel

        Returns:
            Confirmation text
        """
        await self.ensure_channel(channel_id)
        await self.request(
            "POST",
            "/api/messaging/ingest-external",
            json={
                "channel_id": channel_id,
                "server_id": GAME_SERVER_ID,
                "author_id": GAME_AUTHOR_ID,
                "author_display_name": GAME_AUTHOR_NAME,
                "content": content,
                "source_type": "game_ui",
                "raw_message": {"text": content, "type": "user_message"},
                "metadata": {"source": GAME_SOURCE, "userName": GAME_AUTHOR_NAME},
            },
        )
        return f"Message sent to agent: {content}"

    async def relay(
        self,
        endpoint: str,
        path_params: Optional[Dict[str, str]] = None,
        payload: Any = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Relay a pass-through command to a fixed agent endpoint.

        Args:
            endpoint: Key of RELAY_ENDPOINTS
            path_params: Values for placeholders in the path template
            payload: JSON body for POST/PUT
            params: Query parameters
            timeout: Per-command timeout

        Raises:
            InvalidArgumentError: For unknown endpoints or missing path parameters
        """
        if endpoint not in RELAY_ENDPOINTS:
            raise InvalidArgumentError(f"unknown agent endpoint: {endpoint}")
        method, template = RELAY_ENDPOINTS[endpoint]
        try:
            path = template.format(**_path_segments(path_params or {}))
        except KeyError as e:
            raise InvalidArgumentError(f"agent endpoint {endpoint} requires parameter {e}")
        return await self.request(
            method,
            path,
            json=payload if method in ("POST", "PUT") else None,
            params=params,
            timeout=timeout,
        )
