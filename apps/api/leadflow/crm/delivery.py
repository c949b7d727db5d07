from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any

from leadflow.metrics import observe_push_dropped


logger = logging.getLogger("leadflow.crm.delivery")


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


@dataclass
class Subscription:
    """One stream connection's bounded inbox.

    The queue belongs to the event loop that opened the connection. Producers on other
    threads hand messages over with ``call_soon_threadsafe``, so a waiting stream never
    occupies a worker thread.
    """

    user_id: uuid.UUID
    include_system: bool
    queue_size: int
    loop: asyncio.AbstractEventLoop | None = None
    subscription_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    dropped: int = 0

    def __post_init__(self) -> None:
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self.queue_size)

    def offer(self, payload: dict[str, Any]) -> None:
        loop = self.loop
        if loop is None or loop.is_closed():
            self._enqueue(payload)
            return
        if _running_loop() is loop:
            self._enqueue(payload)
        else:
            loop.call_soon_threadsafe(self._enqueue, payload)

    def _enqueue(self, payload: dict[str, Any]) -> None:
        # Drops the oldest message when full.
        while True:
            try:
                self._queue.put_nowait(payload)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    continue
                self.dropped += 1
                observe_push_dropped()

    async def receive(self, timeout: float | None = None) -> dict[str, Any] | None:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def get_nowait(self) -> dict[str, Any] | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()


class NotificationConnectionRegistry:
    """Per-connection bounded queues for real-time notification delivery.

    One instance is created by the host and shared between the notification stream
    endpoint (consumer side) and the expiration dispatcher (producer side).
    """

    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = max(1, queue_size)
        self._lock = threading.Lock()
        self._subscriptions: dict[uuid.UUID, dict[str, Subscription]] = {}

    def connect(self, user_id: uuid.UUID, *, include_system: bool = False) -> Subscription:
        subscription = Subscription(
            user_id=user_id,
            include_system=include_system,
            queue_size=self.queue_size,
            loop=_running_loop(),
        )
        with self._lock:
            self._subscriptions.setdefault(user_id, {})[subscription.subscription_id] = subscription
        logger.info("notification_stream_connected", extra={"owner_user_id": str(user_id)})
        return subscription

    def disconnect(self, subscription: Subscription) -> None:
        with self._lock:
            user_subscriptions = self._subscriptions.get(subscription.user_id)
            if user_subscriptions is None:
                return
            user_subscriptions.pop(subscription.subscription_id, None)
            if not user_subscriptions:
                del self._subscriptions[subscription.user_id]
        logger.info("notification_stream_disconnected", extra={"owner_user_id": str(subscription.user_id)})

    def push_to_user(self, user_id: uuid.UUID, payload: dict[str, Any]) -> int:
        with self._lock:
            targets = list(self._subscriptions.get(user_id, {}).values())
        for subscription in targets:
            subscription.offer(payload)
        return len(targets)

    def push_system(self, payload: dict[str, Any]) -> int:
        with self._lock:
            targets = [
                subscription
                for user_subscriptions in self._subscriptions.values()
                for subscription in user_subscriptions.values()
                if subscription.include_system
            ]
        for subscription in targets:
            subscription.offer(payload)
        return len(targets)

    def is_connected(self, user_id: uuid.UUID) -> bool:
        with self._lock:
            return bool(self._subscriptions.get(user_id))

    def connection_count(self) -> int:
        with self._lock:
            return sum(len(user_subscriptions) for user_subscriptions in self._subscriptions.values())
