"""
In-memory pub/sub for conversation channels.

Publishing is push-only and addressed by channel name; SSE clients subscribe
to a channel and drain a bounded queue. A broker (Redis, Ably) can replace
this class behind the same publish signature.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Set

logger = logging.getLogger(__name__)

# Maximum number of events buffered per subscriber; slow clients lose events
SUBSCRIBER_QUEUE_SIZE = 100


class InMemoryPubSub:
    """Broadcast events to every subscriber of a channel within this process."""

    def __init__(self):
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def subscribe(self, channel: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        async with self._lock:
            self._subscribers[channel].add(queue)
        logger.debug(f"Subscriber added to channel '{channel}'. Total: {len(self._subscribers[channel])}")
        return queue

    async def unsubscribe(self, channel: str, queue: asyncio.Queue):
        async with self._lock:
            self._subscribers[channel].discard(queue)
            if not self._subscribers[channel]:
                del self._subscribers[channel]
        logger.debug(f"Subscriber removed from channel '{channel}'")

    async def publish(self, channel: str, event: str, data: Dict[str, Any]) -> int:
        """Publish ``event`` to all subscribers of ``channel``; returns how many received it."""
        async with self._lock:
            subscribers = list(self._subscribers.get(channel, ()))

        if not subscribers:
            logger.debug(f"No subscribers for channel '{channel}'")
            return 0

        message = {"event": event, "data": data}
        delivered = 0
        for queue in subscribers:
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Queue full for subscriber on channel '{channel}', dropping event '{event}'")
        logger.info(f"Published '{event}' to channel '{channel}' ({delivered}/{len(subscribers)} subscribers)")
        return delivered
