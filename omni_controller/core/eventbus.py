"""EventBus interface + in-memory implementation."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class BusEvent:
    channel: str
    event_id: str  # cursor string e.g. "{kind}/{namespace}/{name}:{resource_version}"
    data: dict[str, Any]


class EventBus(Protocol):
    """Publish/subscribe interface for change notifications."""

    async def publish(self, channel: str, event: BusEvent) -> None: ...

    def open_queue(self, channel: str, maxsize: int = 0) -> asyncio.Queue[BusEvent]: ...

    def close_queue(self, channel: str, q: asyncio.Queue[BusEvent]) -> None: ...


class MemoryEventBus:
    """In-process eventbus with asyncio broadcast to per-subscriber queues."""

    def __init__(self):
        self._subscribers: dict[str, list[asyncio.Queue[BusEvent]]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def publish(self, channel: str, event: BusEvent) -> None:
        async with self._lock:
            for q in self._subscribers[channel]:
                try:
                    q.put_nowait(event)
                except asyncio.QueueFull:
                    pass  # slow consumer drops events; it must resync from the store

    def open_queue(self, channel: str, maxsize: int = 0) -> asyncio.Queue[BusEvent]:
        """Attach a raw queue receiving every event published after this call.

        ``maxsize=0`` makes the queue unbounded, which the dispatcher relies on
        so that no change notification is ever dropped.
        """
        q: asyncio.Queue[BusEvent] = asyncio.Queue(maxsize=maxsize)
        self._subscribers[channel].append(q)
        return q

    def close_queue(self, channel: str, q: asyncio.Queue[BusEvent]) -> None:
        try:
            self._subscribers[channel].remove(q)
        except ValueError:
            pass
