"""
Per-user notification channel

Services publish messages to a user id; WebSocket handlers subscribe on behalf
of their connection and forward whatever lands in their queue. Messages
published while a user has no open subscription are dropped.
"""
import asyncio
import logging
import threading
from typing import Dict, List


logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, user_id: int, loop: asyncio.AbstractEventLoop):
        self.user_id = user_id
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue()

    async def get(self) -> dict:
        return await self.queue.get()


class NotificationHub:
    def __init__(self):
        self._subscriptions: Dict[int, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, user_id: int) -> Subscription:
        """Register a subscription bound to the running event loop."""
        sub = Subscription(user_id, asyncio.get_running_loop())
        with self._lock:
            self._subscriptions.setdefault(user_id, []).append(sub)
        logger.debug("User %s subscribed (%d open)", user_id, self.connection_count(user_id))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(sub.user_id, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscriptions.pop(sub.user_id, None)

    def connection_count(self, user_id: int) -> int:
        with self._lock:
            return len(self._subscriptions.get(user_id, []))

    def publish(self, user_id: int, type: str, **payload) -> int:
        """Queue ``{"type": type, **payload}`` for every open subscription of the user.

        Safe to call from any thread; never waits for delivery. Returns the
        number of subscriptions the message was queued for.
        """
        message = {"type": type, **payload}
        with self._lock:
            subs = list(self._subscriptions.get(user_id, []))
        delivered = 0
        for sub in subs:
            if sub.loop.is_closed():
                continue
            sub.loop.call_soon_threadsafe(sub.queue.put_nowait, message)
            delivered += 1
        if not delivered:
            logger.debug("Dropped %s notification for user %s: no open connection", type, user_id)
        return delivered

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()


hub = NotificationHub()


def get_hub() -> NotificationHub:
    return hub
