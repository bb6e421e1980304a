"""In-process notification sink fanning records out to SSE subscribers."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

from cadenza.models.notifications import Notification


class SseBroker:
    """INotificationSink keeping one queue per connected subscriber."""

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue[Notification]]] = {}

    async def publish(self, notification: Notification) -> None:
        for queue in list(self._subscribers.get(notification.task_id, ())):
            if queue.full():
                # slow consumer: drop its oldest record
                queue.get_nowait()
            queue.put_nowait(notification)

    def subscribe(self, task_id: str) -> asyncio.Queue[Notification]:
        queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.setdefault(task_id, set()).add(queue)
        return queue

    def unsubscribe(self, task_id: str, queue: asyncio.Queue[Notification]) -> None:
        queues = self._subscribers.get(task_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[task_id]

    def subscriber_count(self, task_id: str) -> int:
        return len(self._subscribers.get(task_id, ()))

    async def stream(self, task_id: str) -> AsyncIterator[str]:
        """Yield SSE-framed records for ``task_id`` until the consumer leaves."""
        queue = self.subscribe(task_id)
        try:
            while True:
                notification = await queue.get()
                yield notification.to_sse()
        finally:
            self.unsubscribe(task_id, queue)
