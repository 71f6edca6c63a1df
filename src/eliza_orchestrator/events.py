"""Ordered event log delivered to the UI host with bounded ring buffers."""

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from eliza_orchestrator.utils import get_logger

logger = get_logger(__name__)

Subscriber = Callable[["Event"], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class Event:
    """A single emitted event."""

    seq: int
    name: str
    payload: Dict[str, Any]
    ts: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "seq": self.seq,
            "event": self.name,
            "payload": self.payload,
            "ts": self.ts.isoformat(),
        }


class EventBus:
    """
    Totally ordered event sink shared by every component.

    Events get a sequence number under a single lock, are kept in a bounded ring
    buffer for cursor-based polling and are handed to in-process subscribers in
    publication order.
    """

    DEFAULT_MAX_EVENTS = 10000

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS):
        """
        Initialize event bus.

        Args:
            max_events: Maximum number of events kept for polling
        """
        self.max_events = max_events
        self._buffer: Deque[Event] = deque(maxlen=max_events)
        self._next_seq = 1
        self._lock = asyncio.Lock()
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register an in-process subscriber.

        Args:
            callback: Called with every event, may be a coroutine function

        Returns:
            Function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def publish(self, name: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """
        Append an event and notify subscribers.

        Args:
            name: Event name (e.g. ``agent-message``)
            payload: JSON-serializable payload

        Returns:
            Sequence number of the event
        """
        async with self._lock:
            event = Event(
                seq=self._next_seq,
                name=name,
                payload=dict(payload or {}),
                ts=datetime.now(timezone.utc),
            )
            self._next_seq += 1
            self._buffer.append(event)

            # Delivered under the lock so subscribers observe publication order
            for callback in list(self._subscribers):
                try:
                    result = callback(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(
                        "Event subscriber failed",
                        extra={"event": name, "error": str(e)},
                    )

        logger.debug("Event published", extra={"event": name, "seq": event.seq})
        return event.seq

    async def poll(self, after_seq: int = 0, limit: int = 500) -> Dict[str, Any]:
        """
        Poll for events after a given sequence number.

        Args:
            after_seq: Return events with a greater sequence number
            limit: Maximum number of events returned

        Returns:
            Dictionary with ``events``, ``next_seq`` and ``truncated`` (True when
            events after the cursor were already evicted)
        """
        async with self._lock:
            oldest = self._buffer[0].seq if self._buffer else self._next_seq
            events = [event for event in self._buffer if event.seq > after_seq][:limit]
            next_seq = events[-1].seq if events else max(after_seq, self._next_seq - 1)
            return {
                "events": [event.to_dict() for event in events],
                "next_seq": next_seq,
                "truncated": after_seq + 1 < oldest,
            }

    async def latest(self, name: str) -> Optional[Event]:
        """Return the most recent event with the given name."""
        async with self._lock:
            for event in reversed(self._buffer):
                if event.name == name:
                    return event
            return None
