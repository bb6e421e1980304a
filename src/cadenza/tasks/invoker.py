"""Dispatch a remote task and await its completion signal."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from cadenza.core.exceptions import DispatchRejectedError, TaskFailedError
from cadenza.core.protocols import ILedger
from cadenza.core.types import AccessCredential
from cadenza.models.pipeline import TaskSignal, TaskStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

Validator = Callable[[str], Awaitable[T]]


class TaskInvoker:
    """Turns the ledger's callback-style task API into one awaitable.

    Each invocation owns a future resolved exactly once: by the validator's
    result on Completed, by ``TaskFailedError`` on Failed, or by
    ``DispatchRejectedError`` when the ledger does not acknowledge the task.
    Later signals for the same invocation are ignored.
    """

    def __init__(self, ledger: ILedger) -> None:
        self._ledger = ledger

    async def invoke(
        self,
        agent_id: str,
        payload: dict[str, Any],
        validator: Validator[T],
        credential: Optional[AccessCredential] = None,
    ) -> T:
        if credential is None:
            credential = await self._ledger.get_service_access_config(agent_id)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        claimed = False

        async def on_signal(raw: Any) -> None:
            nonlocal claimed
            signal = TaskSignal.parse(raw)
            if claimed:
                logger.debug("Ignoring duplicate signal for task %s (%s)", signal.task_id, signal.status)
                return
            if signal.status == TaskStatus.COMPLETED:
                claimed = True
                try:
                    result = await validator(signal.task_id)
                except Exception as exc:
                    if not future.done():
                        future.set_exception(exc)
                    return
                if not future.done():
                    future.set_result(result)
            elif signal.status == TaskStatus.FAILED:
                claimed = True
                if not future.done():
                    future.set_exception(TaskFailedError(signal.task_id, str(signal.status)))

        ack = await self._ledger.create_task(agent_id, payload, credential, on_signal)
        if not ack.accepted:
            if not future.done():
                claimed = True
                future.cancel()
                raise DispatchRejectedError(agent_id, ack.data)
        else:
            logger.info("Task %s created for agent %s", ack.task_id, agent_id)
        return await future
