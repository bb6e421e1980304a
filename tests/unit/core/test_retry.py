"""Tests for RetryPolicy callback counts and re-raise behaviour."""

from __future__ import annotations

import pytest

from cadenza.core.retry import RetryPolicy, retry_operation


class Flaky:
    def __init__(self, failures: int, result: str = "ok") -> None:
        self.failures = failures
        self.calls = 0
        self.result = result

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"boom {self.calls}")
        return self.result


class TestRun:
    @pytest.mark.asyncio
    async def test_success_first_try_skips_callback(self):
        seen = []
        op = Flaky(0)
        assert await RetryPolicy(2).run(op, lambda e, a, m: seen.append(a)) == "ok"
        assert op.calls == 1
        assert seen == []

    @pytest.mark.asyncio
    async def test_recovers_after_failures(self):
        seen = []
        op = Flaky(2)
        result = await RetryPolicy(2).run(op, lambda e, a, m: seen.append((str(e), a, m)))
        assert result == "ok"
        assert op.calls == 3
        assert seen == [("boom 1", 0, 2), ("boom 2", 1, 2)]

    @pytest.mark.asyncio
    async def test_exhaustion_calls_back_max_retries_times_and_reraises_last(self):
        seen = []
        op = Flaky(10)
        with pytest.raises(RuntimeError, match="boom 3"):
            await RetryPolicy(2).run(op, lambda e, a, m: seen.append(a))
        assert op.calls == 3
        assert seen == [0, 1]

    @pytest.mark.asyncio
    async def test_zero_retries_runs_once(self):
        seen = []
        op = Flaky(1)
        with pytest.raises(RuntimeError):
            await RetryPolicy(0).run(op, lambda e, a, m: seen.append(a))
        assert op.calls == 1
        assert seen == []

    @pytest.mark.asyncio
    async def test_awaits_async_callback(self):
        seen = []

        async def on_error(exc, attempt, max_retries):
            seen.append(attempt)

        await RetryPolicy(3).run(Flaky(3), on_error)
        assert seen == [0, 1, 2]

    def test_negative_budget_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(-1)


@pytest.mark.asyncio
async def test_retry_operation_shorthand():
    op = Flaky(1)
    assert await retry_operation(op, max_retries=1) == "ok"
    assert op.calls == 2
