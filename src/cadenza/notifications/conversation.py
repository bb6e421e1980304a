"""Per-task conversation history backing the narrator."""

from __future__ import annotations

import asyncio
import json
import uuid

from cadenza.core.protocols import ICacheBackend
from cadenza.models.notifications import ConversationMessage


class ConversationStore:
    """Message history per task, stored as one JSON list per cache key.

    Cache backends are synchronous clients, so every cache call runs in a
    worker thread. Callers serialize access per task (see ``Notifier``); the
    store itself does read-modify-write without locking.
    """

    KEY_PREFIX = "conversation:"

    def __init__(self, cache: ICacheBackend, ttl: int = 86400) -> None:
        self._cache = cache
        self._ttl = ttl

    def _key(self, task_id: str) -> str:
        return f"{self.KEY_PREFIX}{task_id}"

    async def get(self, task_id: str) -> list[ConversationMessage]:
        raw = await asyncio.to_thread(self._cache.get, self._key(task_id))
        if raw is None:
            return []
        return [ConversationMessage.model_validate(item) for item in json.loads(raw)]

    async def _save(self, task_id: str, messages: list[ConversationMessage]) -> None:
        payload = json.dumps([m.model_dump() for m in messages])
        await asyncio.to_thread(self._cache.setex, self._key(task_id), self._ttl, payload)

    async def _append(self, task_id: str, role: str, content: str) -> str:
        message = ConversationMessage(id=str(uuid.uuid4()), role=role, content=content)
        messages = await self.get(task_id)
        messages.append(message)
        await self._save(task_id, messages)
        return message.id

    async def set_user_request(self, task_id: str, request: str) -> str:
        return await self._append(task_id, "user", request)

    async def add_status(self, task_id: str, status: str) -> str:
        return await self._append(task_id, "system", status)

    async def replace(self, task_id: str, message_id: str, content: str) -> bool:
        """Swap a status message for its narrated form; False if not found."""
        if not content:
            return False
        messages = await self.get(task_id)
        for message in messages:
            if message.id == message_id:
                message.content = content
                message.role = "assistant"
                await self._save(task_id, messages)
                return True
        return False

    async def clear(self, task_id: str) -> None:
        await asyncio.to_thread(self._cache.delete, self._key(task_id))
