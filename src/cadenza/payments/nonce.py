"""Local nonce sequencing for a single signing wallet."""

from __future__ import annotations

from typing import Awaitable, Callable, Optional


class NonceSequencer:
    """Fetches the wallet's pending nonce once, then hands out n, n+1, ...

    ``reserve`` is the only mutation. One sequencer covers one sequence of
    transactions; the wallet must not be used by another settlement while the
    sequence is in flight.
    """

    def __init__(self, fetch: Callable[[], Awaitable[int]]) -> None:
        self._fetch = fetch
        self._next: Optional[int] = None

    async def reserve(self) -> int:
        if self._next is None:
            self._next = await self._fetch()
        nonce = self._next
        self._next += 1
        return nonce

    @property
    def started(self) -> bool:
        return self._next is not None
