"""Concurrent sub-task execution with a failure threshold."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, Sequence, TypeVar

from cadenza.core.exceptions import PartialFanOutFailure
from cadenza.core.retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (sub-task, error, attempt, max_retries)
SubTaskRetryHook = Callable[["SubTask[Any]", Exception, int, int], Awaitable[None] | None]

_ABSENT = object()


@dataclass
class SubTask(Generic[T]):
    key: str
    operation: Callable[[], Awaitable[T]]


@dataclass
class FanOutResult(Generic[T]):
    """Present results in input order plus the absent count."""

    results: list[T]
    failed: int
    total: int
    errors: dict[str, Exception] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return self.total - self.failed


class FanOutExecutor:
    """Runs sub-tasks concurrently, each under its own retry policy."""

    def __init__(self, retry: RetryPolicy, concurrency: Optional[int] = None) -> None:
        self._retry = retry
        self._concurrency = concurrency

    async def run(
        self,
        specs: Sequence[SubTask[T]],
        threshold: int,
        on_retry: Optional[SubTaskRetryHook] = None,
    ) -> FanOutResult[T]:
        """Wait for every sub-task; raise if more than ``threshold`` are absent."""
        semaphore = asyncio.Semaphore(self._concurrency) if self._concurrency else None
        errors: dict[str, Exception] = {}

        async def attempt(spec: SubTask[T]) -> Any:
            async def hook(exc: Exception, n: int, max_retries: int) -> None:
                logger.warning("Sub-task %s failed (attempt %d/%d): %s", spec.key, n + 1, max_retries + 1, exc)
                if on_retry is not None:
                    outcome = on_retry(spec, exc, n, max_retries)
                    if inspect.isawaitable(outcome):
                        await outcome

            try:
                if semaphore is None:
                    return await self._retry.run(spec.operation, hook)
                async with semaphore:
                    return await self._retry.run(spec.operation, hook)
            except Exception as exc:
                logger.error("Sub-task %s exhausted its retries: %s", spec.key, exc)
                errors[spec.key] = exc
                return _ABSENT

        outcomes = await asyncio.gather(*(attempt(spec) for spec in specs))
        results = [o for o in outcomes if o is not _ABSENT]
        failed = len(outcomes) - len(results)
        if failed > threshold:
            raise PartialFanOutFailure(threshold, failed, len(specs))
        return FanOutResult(results=results, failed=failed, total=len(specs), errors=errors)
