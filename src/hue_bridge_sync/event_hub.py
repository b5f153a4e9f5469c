from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable


def make_event(kind: str, **data: Any) -> dict[str, Any]:
    return {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "source": "hue-bridge-sync",
        "type": kind,
        "data": data,
    }


@dataclass(frozen=True)
class Subscription:
    queue: "asyncio.Queue[dict[str, Any]]"
    unsubscribe: Callable[[], Awaitable[None]]


class EventHub:
    """Fan-out of canonical events to SSE listeners; slow listeners lose their oldest events."""

    def __init__(self, *, max_queue_size: int = 200) -> None:
        self._subscribers: set[asyncio.Queue[dict[str, Any]]] = set()
        self._max_queue_size = max_queue_size

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def subscribe(self) -> Subscription:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.add(queue)

        async def _unsubscribe() -> None:
            self._subscribers.discard(queue)

        return Subscription(queue=queue, unsubscribe=_unsubscribe)

    def publish_nowait(self, event: dict[str, Any]) -> None:
        for queue in list(self._subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                pass

    async def publish(self, event: dict[str, Any]) -> None:
        self.publish_nowait(event)
