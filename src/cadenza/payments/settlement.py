"""Ensures the orchestrator holds credit on a plan before work is dispatched."""

from __future__ import annotations

import logging
from decimal import ROUND_CEILING, Decimal
from typing import Awaitable, Callable, Optional, Type, TypeVar

from cadenza.core.exceptions import (
    DescriptorUnavailable,
    InsufficientBalanceError,
    SettlementError,
    SwapError,
)
from cadenza.core.protocols import IChain, ILedger
from cadenza.core.retry import OnError, RetryPolicy
from cadenza.core.types import ZERO_ADDRESS
from cadenza.models.notifications import NotificationKind
from cadenza.models.payments import ChainEvent, OrderResult, SettlementReceipt, SwapResult
from cadenza.notifications.notifier import Notifier
from cadenza.payments.plan_account import PlanAccount, PlanAccounts
from cadenza.payments.swapper import TokenSwapper

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _same_address(a: Optional[str], b: Optional[str]) -> bool:
    return a is not None and b is not None and a.lower() == b.lower()


def to_raw_amount(amount: Decimal, decimals: int) -> int:
    """Whole-unit token amount to base units, rounded up."""
    scaled = amount * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_CEILING))


class SettlementProtocol:
    """Check balance, swap if needed, order credit, confirm the mint.

    Every fallible sub-step runs under ``RetryPolicy`` with a narrated
    warning per retry. Exhaustion raises ``SettlementError`` (or a subclass)
    out of ``ensure_balance``; the stage handler owns the step outcome.

    The orchestrator wallet signs with locally sequenced nonces, so two
    settlements must not swap concurrently.
    """

    def __init__(
        self,
        ledger: ILedger,
        chain: IChain,
        accounts: PlanAccounts,
        own_plan_id: str,
        notifier: Notifier,
        swapper: TokenSwapper,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self._ledger = ledger
        self._chain = chain
        self._accounts = accounts
        self._own_plan_id = own_plan_id
        self._notifier = notifier
        self._swapper = swapper
        self._retry = retry or RetryPolicy()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _on_error(self, task_id: str, plan_id: str, action: str) -> OnError:
        async def narrate(exc: Exception, attempt: int, max_retries: int) -> None:
            await self._notifier.report(
                task_id,
                f"Failed to {action} for plan {plan_id} (attempt {attempt + 1}/{max_retries + 1}): "
                f"{exc}. Retrying...",
                NotificationKind.WARNING,
                {"planDid": plan_id},
            )

        return narrate

    async def _attempt(
        self,
        task_id: str,
        plan_id: str,
        action: str,
        operation: Callable[[], Awaitable[T]],
        error_cls: Type[SettlementError] = SettlementError,
    ) -> T:
        try:
            return await self._retry.run(operation, self._on_error(task_id, plan_id, action))
        except SettlementError:
            raise
        except Exception as exc:
            raise error_cls(plan_id, f"Failed to {action} for plan {plan_id}: {exc}") from exc

    async def _descriptor(self, task_id: str, account: PlanAccount) -> None:
        async def load() -> None:
            await account.load()

        try:
            await self._attempt(task_id, account.plan_id, "load the plan descriptor", load)
        except SettlementError as exc:
            cause = exc.__cause__
            if isinstance(cause, DescriptorUnavailable):
                logger.warning("Descriptor unavailable for plan %s: %s", account.plan_id, cause)
            raise

    async def block_number(self) -> Optional[int]:
        """Current block height, or None when the chain cannot be reached."""
        try:
            return await self._retry.run(self._chain.block_number)
        except Exception as exc:
            logger.warning("Could not read block height: %s", exc)
            return None

    # ------------------------------------------------------------------
    # settlement
    # ------------------------------------------------------------------

    async def ensure_balance(
        self,
        task_id: str,
        plan_id: str,
        required: int = 1,
        agent_name: str = "",
    ) -> SettlementReceipt:
        """Make sure ``plan_id`` covers ``required`` credits for our account."""
        label = f" for {agent_name} agent" if agent_name else ""
        await self._notifier.report(
            task_id, f"Checking balance{label}", metadata={"planDid": plan_id}
        )
        snapshot = await self._attempt(
            task_id, plan_id, "get balance", lambda: self._ledger.get_plan_balance(plan_id)
        )
        receipt = SettlementReceipt(plan_id=plan_id, balance=snapshot.balance, required=required)

        if snapshot.covers(required):
            logger.info(
                "Plan %s balance %d covers %d (owner=%s)",
                plan_id, snapshot.balance, required, snapshot.is_owner,
            )
            await self._notifier.report(
                task_id,
                f"Balance sufficient{label}: {snapshot.balance} credits available",
                metadata={"planDid": plan_id},
            )
            return receipt

        await self._notifier.report(
            task_id,
            f"Insufficient balance for plan {plan_id} ({snapshot.balance} < {required}). "
            "Ordering credits...",
            NotificationKind.WARNING,
            {"planDid": plan_id},
        )

        target = self._accounts.get(plan_id)
        own = self._accounts.get(self._own_plan_id)
        await self._descriptor(task_id, target)
        await self._descriptor(task_id, own)

        target_token = await target.token_address()
        own_token = await own.token_address()
        if target_token and own_token and not _same_address(target_token, own_token):
            receipt.swap = await self._fund_with_swap(task_id, target, own)
        elif not target_token or not own_token:
            logger.info("Plan %s or own plan has no settlement token; ordering directly", plan_id)

        from_block = await self._attempt(
            task_id, plan_id, "read the block height", self._chain.block_number
        )
        receipt.order = await self._order(task_id, plan_id)
        receipt.ordered = True

        receipt.mint_event = await self._find_mint(task_id, target, from_block)
        if receipt.mint_event is not None:
            await self._notifier.report(
                task_id,
                f"Orchestrator agent purchased {receipt.mint_event.value} credits for plan {plan_id}",
                NotificationKind.AGENT_TRANSACTION,
                {"txHash": receipt.mint_event.tx_hash, "credits": receipt.mint_event.value, "planDid": plan_id},
            )
        else:
            logger.warning("No mint event found for plan %s since block %d", plan_id, from_block)
            await self._notifier.report(
                task_id,
                f"Orchestrator agent purchased credits for plan {plan_id}",
                metadata={"planDid": plan_id},
            )
        return receipt

    async def _order(self, task_id: str, plan_id: str) -> OrderResult:
        async def order() -> OrderResult:
            result = await self._ledger.order_plan(plan_id)
            if not result.success:
                raise InsufficientBalanceError(plan_id, "the ledger rejected the order")
            return result

        try:
            return await self._retry.run(order, self._on_error(task_id, plan_id, "purchase credits"))
        except Exception as exc:
            raise InsufficientBalanceError(
                plan_id,
                f"Failed to order credits for plan {plan_id}. "
                f"Insufficient balance and failed to purchase credits: {exc}",
            ) from exc

    async def _fund_with_swap(
        self, task_id: str, target: PlanAccount, own: PlanAccount
    ) -> Optional[SwapResult]:
        plan_id = target.plan_id
        target_token = await target.token_address()
        own_token = await own.token_address()
        price = await target.price()
        wallet = await own.owner_wallet()
        if price is None:
            raise SettlementError(plan_id, f"Plan {plan_id} does not declare a price")
        if wallet is None:
            raise SettlementError(plan_id, f"Plan {self._own_plan_id} has no owner wallet")
        if price == 0:
            await self._notifier.report(
                task_id, f"Ordering free plan {plan_id}", metadata={"planDid": plan_id}
            )
            return None

        symbol = await target.token_symbol() or target_token
        decimals = await self._attempt(
            task_id, plan_id, "read token decimals", lambda: self._chain.token_decimals(target_token)
        )
        required_raw = to_raw_amount(price, decimals)
        held = await self._attempt(
            task_id,
            plan_id,
            "check the wallet balance",
            lambda: self._chain.token_balance(target_token, wallet),
        )
        if held >= required_raw:
            logger.info("Wallet %s already holds %d of %s, skipping swap", wallet, held, target_token)
            await self._notifier.report(
                task_id,
                f"Wallet already holds enough {symbol} to pay for plan {plan_id}",
                metadata={"planDid": plan_id},
            )
            return None

        await self._notifier.report(
            task_id,
            f"Plan {plan_id} is paid in {symbol}. Swapping tokens to cover {price} {symbol}...",
            metadata={"planDid": plan_id},
        )
        try:
            swap = await self._swapper.swap_and_transfer(
                plan_id,
                own_token,
                target_token,
                required_raw,
                wallet,
                self._on_error(task_id, plan_id, "swap tokens"),
            )
        except SwapError as exc:
            logger.error("Swap for plan %s aborted: %s (partial=%s)", plan_id, exc, exc.partial)
            raise
        await self._notifier.report(
            task_id,
            f"Swapped tokens and transferred {price} {symbol} to {wallet}",
            NotificationKind.TRANSACTION,
            {
                "planDid": plan_id,
                "swapTxHash": swap.swap_tx_hash,
                "transferTxHash": swap.transfer_tx_hash,
            },
        )
        return swap

    async def _find_mint(
        self, task_id: str, account: PlanAccount, from_block: int
    ) -> Optional[ChainEvent]:
        contract = await account.credit_contract()
        operator = await account.mint_operator()
        token_id = await account.credit_token_id()
        if not contract or not operator or token_id is None:
            logger.warning("Plan %s lacks credit contract data; mint not verifiable", account.plan_id)
            return None
        wallet = self._chain.wallet_address
        events = await self._attempt(
            task_id,
            account.plan_id,
            "scan credit mint events",
            lambda: self._chain.transfer_single_events(
                contract, operator, from_block, to_address=wallet
            ),
        )
        return _latest(
            e for e in events
            if e.token_id == token_id and _same_address(e.from_address, ZERO_ADDRESS)
        )

    # ------------------------------------------------------------------
    # redemption notices
    # ------------------------------------------------------------------

    async def report_redemption(
        self, task_id: str, plan_id: str, from_block: Optional[int]
    ) -> Optional[ChainEvent]:
        """Narrate the credit burn for a finished remote task. Never raises."""
        if from_block is None:
            return None
        try:
            account = self._accounts.get(plan_id)
            contract = await account.credit_contract()
            operator = await account.burn_operator()
            token_id = await account.credit_token_id()
            if not contract or not operator or token_id is None:
                return None
            events = await self._chain.transfer_single_events(
                contract,
                operator,
                from_block,
                from_address=self._chain.wallet_address,
                to_address=ZERO_ADDRESS,
            )
            burn = _latest(e for e in events if e.token_id == token_id)
            if burn is None:
                logger.warning("No burn detected for plan %s since block %d", plan_id, from_block)
                return None
            logger.info("Burn detected for plan %s: %s", plan_id, burn.tx_hash)
            await self._notifier.report(
                task_id,
                f"{burn.value} credits redeemed for plan {plan_id}",
                NotificationKind.REDEMPTION,
                {"txHash": burn.tx_hash, "credits": burn.value, "planDid": plan_id},
            )
            return burn
        except Exception as exc:
            logger.error("Error finding burn transaction for plan %s: %s", plan_id, exc)
            return None


def _latest(events) -> Optional[ChainEvent]:
    latest: Optional[ChainEvent] = None
    for event in events:
        if latest is None or event.block_number >= latest.block_number:
            latest = event
    return latest
