from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from automaker.models import EventSink, EventType

logger = logging.getLogger(__name__)


def emit(sink: EventSink | None, project_path: str, event_type: EventType, **fields: Any) -> None:
    """Send one lifecycle event; a failing sink is logged, never raised."""
    if sink is None:
        return
    event = {"type": EventType(event_type).value, "project_path": project_path, **fields}
    try:
        sink(event)
    except Exception:
        logger.exception(f"Event sink failed for {event['type']} ({fields.get('feature_id')})")


class EventBroadcaster:
    """Fans lifecycle events out to every connected SSE client.

    ``publish`` is the event sink handed to the orchestrator. Each subscriber
    gets a bounded queue; a client too slow to keep up loses the oldest
    events rather than blocking the publisher.
    """

    def __init__(self, max_queue: int = 1000):
        self.max_queue = max_queue
        self._subscribers: set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: dict[str, Any]) -> None:
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    async def stream(self, project_path: str | None = None) -> AsyncIterator[str]:
        """Yield events as SSE-formatted text, optionally for one project only."""
        queue = self.subscribe()
        try:
            while True:
                event = await queue.get()
                if project_path is not None and event.get("project_path") != project_path:
                    continue
                yield f"data: {json.dumps(event, default=str)}\n\n"
        finally:
            self.unsubscribe(queue)
