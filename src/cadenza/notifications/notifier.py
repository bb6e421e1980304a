"""Serialized, narrated notifications per task."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from cadenza.core.protocols import ILedger, INarrator, INotificationSink
from cadenza.models.notifications import Artifacts, Notification, NotificationKind
from cadenza.notifications.conversation import ConversationStore
from cadenza.notifications.narrator import PassthroughNarrator

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    NotificationKind.ERROR: logging.ERROR,
    NotificationKind.WARNING: logging.WARNING,
}


class Notifier:
    """Produces narration records for a task's event stream.

    Records for the same task are narrated and published one at a time, in
    call order, under a lock keyed by task id. Locks are created on first
    reference and dropped by ``release`` once the task is done.
    """

    def __init__(
        self,
        sink: INotificationSink,
        history: ConversationStore,
        narrator: Optional[INarrator] = None,
        ledger: Optional[ILedger] = None,
    ) -> None:
        self._sink = sink
        self._history = history
        self._narrator = narrator or PassthroughNarrator()
        self._ledger = ledger
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, task_id: str) -> asyncio.Lock:
        lock = self._locks.get(task_id)
        if lock is None:
            lock = self._locks[task_id] = asyncio.Lock()
        return lock

    async def start_conversation(self, task_id: str, user_request: str) -> None:
        await self._history.set_user_request(task_id, user_request)

    async def release(self, task_id: str) -> None:
        """Drop per-task state once the pipeline for ``task_id`` is over.

        A lock that is still held stays registered so later waiters keep
        serializing on the same object.
        """
        lock = self._locks.get(task_id)
        if lock is not None and not lock.locked():
            del self._locks[task_id]
        await self._history.clear(task_id)

    async def notify(
        self,
        task_id: str,
        kind: NotificationKind,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
        artifacts: Optional[Artifacts] = None,
    ) -> Notification:
        async with self._lock(task_id):
            message_id = await self._history.add_status(task_id, message)
            try:
                narrated = await self._narrator.rephrase(await self._history.get(task_id))
            except Exception as exc:
                logger.warning("Narration failed for task %s, sending raw status: %s", task_id, exc)
                narrated = ""
            narrated = narrated or message
            await self._history.replace(task_id, message_id, narrated)

            notification = Notification(
                task_id=task_id,
                kind=kind,
                message=narrated,
                metadata=metadata or {},
                artifacts=artifacts,
            )
            await self._sink.publish(notification)
            return notification

    async def report(
        self,
        task_id: str,
        message: str,
        kind: NotificationKind = NotificationKind.REASONING,
        metadata: Optional[dict[str, Any]] = None,
        artifacts: Optional[Artifacts] = None,
    ) -> None:
        """Narrate ``message`` and mirror it to the process log and ledger log."""
        level = _LOG_LEVELS.get(kind, logging.INFO)
        logger.log(level, "[task %s] %s", task_id, message)
        await self.notify(task_id, kind, message, metadata, artifacts)
        if self._ledger is not None:
            try:
                await self._ledger.log_message(task_id, logging.getLevelName(level).lower(), message)
            except Exception as exc:
                logger.warning("Could not mirror message to ledger log for task %s: %s", task_id, exc)
