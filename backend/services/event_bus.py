"""
In-process pub/sub for KDS order events.

The finish-order endpoint publishes here and the SSE endpoint forwards events
to connected displays, which refresh immediately instead of waiting for the
next poll.
"""

import asyncio
import logging

logger = logging.getLogger(__name__)

ORDER_FINISHED = "ORDER_FINISHED"
ORDERS_CHANGED = "ORDERS_CHANGED"


class KDSEventBus:
    """Simple pub/sub for notifying SSE subscribers of KDS events."""

    def __init__(self, max_queue_size: int = 100):
        self._subscribers: list[asyncio.Queue] = []
        self.max_queue_size = max_queue_size

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue):
        if q in self._subscribers:
            self._subscribers.remove(q)

    async def publish(self, event: dict):
        for q in list(self._subscribers):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                # Slow subscriber; it refreshes on its next poll anyway
                logger.debug(f"Dropping KDS event {event.get('type')} for a full subscriber queue")


# Global event bus - imported by kds.py for the SSE endpoint
kds_event_bus = KDSEventBus()
