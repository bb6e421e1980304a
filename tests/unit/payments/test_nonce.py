"""Tests for NonceSequencer."""

from __future__ import annotations

import pytest

from cadenza.payments.nonce import NonceSequencer


@pytest.mark.asyncio
async def test_fetches_once_then_increments_locally():
    fetches = []

    async def fetch() -> int:
        fetches.append(1)
        return 41

    sequencer = NonceSequencer(fetch)
    assert not sequencer.started
    assert [await sequencer.reserve() for _ in range(3)] == [41, 42, 43]
    assert len(fetches) == 1
    assert sequencer.started


@pytest.mark.asyncio
async def test_failed_fetch_is_retried_on_next_reserve():
    calls = []

    async def fetch() -> int:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("rpc down")
        return 5

    sequencer = NonceSequencer(fetch)
    with pytest.raises(RuntimeError):
        await sequencer.reserve()
    assert await sequencer.reserve() == 5
