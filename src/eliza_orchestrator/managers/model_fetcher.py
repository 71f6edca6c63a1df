"""Ensures the required Ollama models are present before the agent starts."""

import asyncio
import json
from typing import List, Optional

import httpx

from eliza_orchestrator.events import EventBus
from eliza_orchestrator.services import OLLAMA_CONTAINER
from eliza_orchestrator.utils import get_logger
from eliza_orchestrator.utils.exceptions import (
    ConnectionRecoverableError,
    HealthTimeoutError,
    ProtocolError,
)

logger = get_logger(__name__)


def has_model(available: List[str], model: str) -> bool:
    """Match ``nomic-embed-text`` against ``nomic-embed-text:latest`` as well."""
    return any(name == model or name.startswith(f"{model}:") for name in available)


class ModelFetcher:
    """Checks ``/api/tags`` and pulls missing models one at a time."""

    def __init__(
        self,
        events: EventBus,
        base_url: str,
        pull_timeout: float = 600.0,
        poll_interval: float = 5.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize model fetcher.

        Args:
            events: Event bus receiving ``model-progress`` events
            base_url: Ollama base URL reachable from the host
            pull_timeout: Per-model timeout in seconds
            poll_interval: Seconds between ``/api/tags`` polls during a pull
            http_transport: Optional httpx transport
        """
        self.events = events
        self.base_url = base_url.rstrip("/")
        self.pull_timeout = pull_timeout
        self.poll_interval = poll_interval
        self._http_transport = http_transport

    def _client(self, timeout: Optional[float] = 10.0) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, transport=self._http_transport, timeout=timeout
        )

    async def list_models(self) -> List[str]:
        """
        Return the names listed by ``GET /api/tags``.

        Raises:
            ConnectionRecoverableError: If Ollama cannot be reached
            ProtocolError: If the response is not the expected JSON
        """
        try:
            async with self._client() as client:
                response = await client.get("/api/tags")
        except httpx.HTTPError as e:
            raise ConnectionRecoverableError(f"failed to list Ollama models: {e}")

        if not response.is_success:
            raise ProtocolError(f"Ollama /api/tags returned {response.status_code}")
        try:
            models = response.json().get("models") or []
            return [entry["name"] for entry in models]
        except (ValueError, AttributeError, KeyError, TypeError) as e:
            raise ProtocolError(f"malformed Ollama /api/tags response: {e}")

    async def _report(self, model: str, status: str, progress: int) -> None:
        await self.events.publish(
            "model-progress", {"model": model, "status": status, "progress": progress}
        )

    async def _stream_pull(self, model: str) -> None:
        """POST /api/pull and relay progress lines until the stream ends."""
        last_percent = -1
        async with self._client(timeout=None) as client:
            async with client.stream("POST", "/api/pull", json={"name": model}) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise ProtocolError(
                        f"Ollama pull of {model} returned {response.status_code}: {body}"
                    )
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        update = json.loads(line)
                    except ValueError:
                        continue
                    if "error" in update:
                        if "already exists" in str(update["error"]):
                            return
                        raise ProtocolError(f"Ollama pull of {model} failed: {update['error']}")
                    total = update.get("total") or 0
                    completed = update.get("completed") or 0
                    percent = int(completed * 100 / total) if total else 0
                    if percent != last_percent:
                        last_percent = percent
                        await self._report(model, update.get("status", "pulling"), percent)

    async def _pull(self, model: str) -> None:
        logger.info("Pulling model", extra={"model": model})
        await self._report(model, "pulling", 0)

        pull_task = asyncio.create_task(self._stream_pull(model), name=f"pull-{model}")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.pull_timeout
        try:
            while True:
                if pull_task.done() and pull_task.exception() is not None:
                    error = pull_task.exception()
                    if isinstance(error, httpx.HTTPError):
                        raise ConnectionRecoverableError(f"failed to pull model {model}: {error}")
                    raise error
                if has_model(await self.list_models(), model):
                    break
                if loop.time() >= deadline:
                    raise HealthTimeoutError(
                        OLLAMA_CONTAINER,
                        f"model {model} not available after {self.pull_timeout}s",
                    )
                await asyncio.sleep(self.poll_interval)
        finally:
            if not pull_task.done():
                pull_task.cancel()
                try:
                    await pull_task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.debug("Pull stream ended", extra={"model": model, "error": str(e)})

        await self._report(model, "ready", 100)
        logger.info("Model ready", extra={"model": model})

    async def ensure_models(self, models: List[str]) -> None:
        """
        Make every model available, pulling sequentially.

        Args:
            models: Model references such as ``llama3.2:3b``

        Raises:
            HealthTimeoutError: If a pull does not finish in time
            ProtocolError: If Ollama rejects a pull
            ConnectionRecoverableError: If Ollama cannot be reached
        """
        available = await self.list_models()
        for model in models:
            if has_model(available, model):
                logger.info("Model already present", extra={"model": model})
                await self._report(model, "present", 100)
                continue
            await self._pull(model)
