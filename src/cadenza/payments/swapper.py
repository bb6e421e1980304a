"""Exact-output token swap followed by a transfer to the receiving wallet."""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from cadenza.core.exceptions import InsufficientLiquidityError, SwapError
from cadenza.core.protocols import IChain
from cadenza.core.retry import OnError, RetryPolicy
from cadenza.models.payments import SwapResult
from cadenza.payments.amm import ExactOutputTrade
from cadenza.payments.nonce import NonceSequencer

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenSwapper:
    """Runs approve, swap and transfer from the orchestrator wallet.

    The three transactions use consecutive nonces reserved from one
    ``NonceSequencer``; a retried transaction reuses its nonce. A failure
    raises ``SwapError`` carrying the hashes already broadcast, which are
    not rolled back.
    """

    def __init__(
        self,
        chain: IChain,
        retry: RetryPolicy,
        router_address: str,
        slippage_bps: int = 100,
        deadline_seconds: int = 1200,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._chain = chain
        self._retry = retry
        self._router = router_address
        self._slippage_bps = slippage_bps
        self._deadline_seconds = deadline_seconds
        self._clock = clock

    async def _step(
        self,
        plan_id: str,
        label: str,
        operation: Callable[[], Awaitable[T]],
        on_error: Optional[OnError],
        partial: SwapResult,
    ) -> T:
        try:
            return await self._retry.run(operation, on_error)
        except Exception as exc:
            raise SwapError(plan_id, f"{label} failed for plan {plan_id}: {exc}", partial) from exc

    async def quote(self, plan_id: str, token_in: str, token_out: str, amount_out: int,
                    on_error: Optional[OnError] = None) -> ExactOutputTrade:
        reserve_in, reserve_out = await self._step(
            plan_id,
            "Reading pool reserves",
            lambda: self._chain.pair_reserves(token_in, token_out),
            on_error,
            SwapResult(amount_out=amount_out),
        )
        try:
            return ExactOutputTrade.quote(
                token_in, token_out, amount_out, reserve_in, reserve_out, self._slippage_bps
            )
        except (InsufficientLiquidityError, ValueError) as exc:
            raise SwapError(plan_id, f"Cannot quote swap for plan {plan_id}: {exc}") from exc

    async def swap_and_transfer(
        self,
        plan_id: str,
        token_in: str,
        token_out: str,
        amount_out: int,
        recipient: str,
        on_error: Optional[OnError] = None,
    ) -> SwapResult:
        """Acquire exactly ``amount_out`` of ``token_out`` and send it to ``recipient``."""
        trade = await self.quote(plan_id, token_in, token_out, amount_out, on_error)
        result = SwapResult(amount_out=trade.amount_out, max_amount_in=trade.max_amount_in)
        logger.info(
            "Swapping up to %d of %s for %d of %s (plan %s)",
            trade.max_amount_in, token_in, trade.amount_out, token_out, plan_id,
        )

        nonces = NonceSequencer(self._chain.pending_nonce)

        nonce = await self._step(plan_id, "Fetching nonce", nonces.reserve, on_error, result)
        result.approve_tx_hash = await self._step(
            plan_id,
            "Approve",
            lambda: self._chain.approve(token_in, self._router, trade.max_amount_in, nonce),
            on_error,
            result,
        )

        nonce = await nonces.reserve()
        deadline = int(self._clock()) + self._deadline_seconds
        result.swap_tx_hash = await self._step(
            plan_id,
            "Swap",
            lambda: self._chain.swap_exact_output(
                trade.amount_out,
                trade.max_amount_in,
                trade.path,
                self._chain.wallet_address,
                deadline,
                nonce,
            ),
            on_error,
            result,
        )
        logger.info("Swap completed with tx %s", result.swap_tx_hash)

        nonce = await nonces.reserve()
        result.transfer_tx_hash = await self._step(
            plan_id,
            "Transfer",
            lambda: self._chain.transfer(token_out, recipient, trade.amount_out, nonce),
            on_error,
            result,
        )
        result.success = True
        return result
