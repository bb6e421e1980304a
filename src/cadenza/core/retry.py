"""Bounded retry for async operations."""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")

OnError = Callable[[Exception, int, int], Awaitable[None] | None]


class RetryPolicy:
    """Run an operation up to ``max_retries + 1`` times with no delay.

    ``on_error(error, attempt, max_retries)`` is called before each retry with
    the zero-based index of the attempt that failed. The final failure is
    re-raised without calling it, so the callback fires exactly
    ``max_retries`` times when every attempt fails.
    """

    def __init__(self, max_retries: int = 2) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        on_error: OnError | None = None,
    ) -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as exc:
                if attempt == self.max_retries:
                    raise
                if on_error is not None:
                    outcome: Any = on_error(exc, attempt, self.max_retries)
                    if inspect.isawaitable(outcome):
                        await outcome
                attempt += 1


async def retry_operation(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 2,
    on_error: OnError | None = None,
) -> T:
    """Shorthand for ``RetryPolicy(max_retries).run(operation, on_error)``."""
    return await RetryPolicy(max_retries).run(operation, on_error)
