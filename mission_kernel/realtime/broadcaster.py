"""
Delta Broadcaster — fan-out of committed entity changes to subscribers.

Publishing is called from request threads after a unit of work commits. Each
subscription owns an asyncio.Queue bound to the subscriber's event loop and
is fed with call_soon_threadsafe, so publish() never blocks on a consumer.
Delivery is at-least-once from the subscriber's point of view; consumers
compare revisions.
"""

import asyncio
import threading
from typing import List, Optional
from uuid import uuid4

from mission_kernel.logging_utils import get_logger
from mission_kernel.models.realtime import EntityDelta

logger = get_logger("mission_kernel.realtime")


class Subscription:
    """One subscriber's inbound delta queue."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.id = f"sub_{uuid4().hex[:12]}"
        self.loop = loop
        self.queue: "asyncio.Queue[EntityDelta]" = asyncio.Queue()
        self.closed = False

    async def get(self) -> EntityDelta:
        return await self.queue.get()

    def drain(self) -> List[EntityDelta]:
        """Discard and return everything queued so far."""
        backlog = []
        while not self.queue.empty():
            backlog.append(self.queue.get_nowait())
        return backlog


class DeltaBroadcaster:
    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> Subscription:
        """Must be called from (or given) the consumer's running loop."""
        subscription = Subscription(loop or asyncio.get_running_loop())
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug(f"Subscription {subscription.id} opened")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.closed = True
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        logger.debug(f"Subscription {subscription.id} closed")

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, delta: EntityDelta) -> None:
        with self._lock:
            targets = list(self._subscriptions)

        for subscription in targets:
            try:
                subscription.loop.call_soon_threadsafe(subscription.queue.put_nowait, delta)
            except RuntimeError:
                # Loop already closed: the subscriber went away without unsubscribing.
                logger.info(f"Dropping subscription {subscription.id}: event loop closed")
                self.unsubscribe(subscription)
