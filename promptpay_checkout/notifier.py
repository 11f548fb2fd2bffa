"""Server-sent event fan-out keyed by order id.

The registry lives in process memory. Behind several worker processes an
event published in one process never reaches subscribers held by another,
so a client that misses the push falls back to status polling.
"""

import asyncio
import json
import logging
import threading
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, Optional, Set

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0


def format_event(data: Any, event: Optional[str] = None) -> str:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data)}\n\n"


class Subscription:
    """One open stream. Created on the event loop that will consume it."""

    def __init__(self, order_id: int, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.order_id = order_id
        self._loop = loop or asyncio.get_running_loop()
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()

    def send(self, event: Any) -> None:
        # publishers may run in worker threads
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def get(self, timeout: Optional[float] = None) -> Any:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)


class OrderNotifier:
    def __init__(self):
        self._subscribers: Dict[int, Set[Subscription]] = defaultdict(set)
        self._lock = threading.Lock()

    def subscribe(self, order_id: int) -> Subscription:
        subscription = Subscription(order_id)
        with self._lock:
            self._subscribers[order_id].add(subscription)
        logger.debug("Subscriber added for order %s", order_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.order_id)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.order_id]
        logger.debug("Subscriber removed for order %s", subscription.order_id)

    def subscriber_count(self, order_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(order_id, ()))

    def publish(self, order_id: int, event: Any) -> int:
        """Deliver ``event`` to current subscribers; nothing is kept for later ones."""
        with self._lock:
            targets = list(self._subscribers.get(order_id, ()))
        delivered = 0
        for subscription in targets:
            try:
                subscription.send(event)
            except RuntimeError:
                # event loop already closed, the stream is gone
                logger.warning("Dropping dead subscriber for order %s", order_id)
                self.unsubscribe(subscription)
                continue
            delivered += 1
        return delivered


notifier = OrderNotifier()


async def event_stream(request, order_id: int, registry: OrderNotifier,
                       keepalive: float = KEEPALIVE_SECONDS) -> AsyncIterator[str]:
    """Subscribe to ``order_id`` and yield SSE frames until the client disconnects.

    Registration happens on the first iteration and is undone when the
    generator closes.
    """
    subscription = registry.subscribe(order_id)
    try:
        yield format_event("ok", event="ping")
        while not await request.is_disconnected():
            try:
                event = await subscription.get(timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield format_event(event)
    finally:
        registry.unsubscribe(subscription)
