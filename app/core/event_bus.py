"""
In-memory event bus for outbound hazard events.

Simple pub/sub using asyncio.Queue. Subscribers attach to a channel
(e.g. "raw.earthquake.alert") and receive SSE-formatted events. State is
entirely in-memory; clients reconnect on restart.
"""

import asyncio
import json
import logging
import time
from typing import AsyncGenerator, Dict, Any, Optional, Set

logger = logging.getLogger(__name__)

# Keepalive interval (seconds)
KEEPALIVE_INTERVAL = 15


class _EventBus:
    """Singleton event bus for in-process pub/sub."""

    def __init__(self):
        # channel -> set of asyncio.Queue
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}
        # channel -> events published since startup
        self._published: Dict[str, int] = {}

    def publish(
        self,
        channel: str,
        event_type: str,
        data: Dict[str, Any],
        partition_key: Optional[str] = None,
    ) -> int:
        """
        Publish an event to all subscribers of a channel.

        Args:
            channel: Channel name (e.g. "raw.flood.alert")
            event_type: SSE event type (e.g. "flood.alert", "tsunami.warning")
            data: Event payload
            partition_key: Ordering key (natural key or station id)

        Returns:
            Number of subscribers notified
        """
        self._published[channel] = self._published.get(channel, 0) + 1

        subscribers = self._subscribers.get(channel, set())
        if not subscribers:
            return 0

        event = {
            "type": event_type,
            "key": partition_key,
            "data": data,
            "timestamp": time.time(),
        }

        dead_queues = set()
        for queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Slow consumer, drop it
                dead_queues.add(queue)

        for q in dead_queues:
            subscribers.discard(q)
        if dead_queues:
            logger.warning(f"Dropped {len(dead_queues)} slow subscribers on {channel}")

        return len(subscribers)

    def subscribe(self, channel: str, max_queue_size: int = 100) -> asyncio.Queue:
        """Attach a raw queue to a channel."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._subscribers.setdefault(channel, set()).add(queue)
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        self._subscribers.get(channel, set()).discard(queue)
        # Clean up empty channel sets
        if channel in self._subscribers and not self._subscribers[channel]:
            del self._subscribers[channel]

    async def subscribe_stream(
        self, channel: str, max_queue_size: int = 100
    ) -> AsyncGenerator[str, None]:
        """
        Async generator yielding SSE-formatted strings.

        Includes keepalive comments every KEEPALIVE_INTERVAL seconds.

        Args:
            channel: Channel to subscribe to
            max_queue_size: Max queued events before dropping

        Yields:
            SSE-formatted event strings
        """
        queue = self.subscribe(channel, max_queue_size)

        try:
            while True:
                try:
                    event = await asyncio.wait_for(
                        queue.get(), timeout=KEEPALIVE_INTERVAL
                    )
                    lines = [f"event: {event['type']}"]
                    if event["key"]:
                        lines.append(f"id: {event['key']}")
                    lines.append(f"data: {json.dumps(event['data'], default=str)}")
                    yield "\n".join(lines) + "\n\n"
                except asyncio.TimeoutError:
                    # Send keepalive comment
                    yield ": keepalive\n\n"
        finally:
            self.unsubscribe(channel, queue)

    @property
    def active_channels(self) -> Dict[str, int]:
        """Get active channels and subscriber counts."""
        return {
            channel: len(subs) for channel, subs in self._subscribers.items() if subs
        }

    @property
    def published_counts(self) -> Dict[str, int]:
        """Events published per channel since startup."""
        return dict(self._published)

    def reset(self) -> None:
        """Drop all subscribers and counters (tests)."""
        self._subscribers.clear()
        self._published.clear()


# Module-level singleton
EventBus = _EventBus()
