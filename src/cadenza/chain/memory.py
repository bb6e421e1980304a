"""In-memory EVM stand-in recording every call and nonce."""

from __future__ import annotations

from typing import Any, Optional, Sequence

from cadenza.core.exceptions import CadenzaError, InsufficientLiquidityError, TransientRemoteError
from cadenza.models.payments import ChainEvent


class MemoryChain:
    """Dict-backed IChain for unit tests."""

    def __init__(self, wallet_address: str = "0x00000000000000000000000000000000000000aa") -> None:
        self._wallet = wallet_address
        self.block = 100
        self.nonce = 0
        self.decimals: dict[str, int] = {}
        self.symbols: dict[str, str] = {}
        self.balances: dict[tuple[str, str], int] = {}
        self.reserves: dict[tuple[str, str], tuple[int, int]] = {}
        self.events: list[ChainEvent] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failures: dict[str, int] = {}
        self._tx_counter = 0

    @property
    def wallet_address(self) -> str:
        return self._wallet

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _maybe_fail(self, operation: str) -> None:
        remaining = self.failures.get(operation, 0)
        if remaining > 0:
            self.failures[operation] = remaining - 1
            raise TransientRemoteError(f"{operation} reverted")

    def _record(self, operation: str, **kwargs: Any) -> None:
        self.calls.append((operation, kwargs))

    def _tx(self, nonce: int) -> str:
        if nonce != self.nonce:
            raise CadenzaError(f"nonce mismatch: expected {self.nonce}, got {nonce}")
        self.nonce += 1
        self.block += 1
        self._tx_counter += 1
        return f"0x{self._tx_counter:064x}"

    def calls_to(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def set_balance(self, token: str, wallet: str, amount: int) -> None:
        self.balances[(token.lower(), wallet.lower())] = amount

    def balance_of(self, token: str, wallet: str) -> int:
        return self.balances.get((token.lower(), wallet.lower()), 0)

    def add_event(self, **fields: Any) -> ChainEvent:
        event = ChainEvent(**fields)
        self.events.append(event)
        return event

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def block_number(self) -> int:
        self._maybe_fail("block_number")
        return self.block

    async def pending_nonce(self) -> int:
        self._maybe_fail("pending_nonce")
        self._record("pending_nonce")
        return self.nonce

    async def token_decimals(self, token: str) -> int:
        self._maybe_fail("token_decimals")
        return self.decimals.get(token.lower(), 18)

    async def token_symbol(self, token: str) -> str:
        return self.symbols.get(token.lower(), "TKN")

    async def token_balance(self, token: str, wallet: str) -> int:
        self._maybe_fail("token_balance")
        self._record("token_balance", token=token, wallet=wallet)
        return self.balance_of(token, wallet)

    async def pair_reserves(self, token_in: str, token_out: str) -> tuple[int, int]:
        self._maybe_fail("pair_reserves")
        key = (token_in.lower(), token_out.lower())
        if key in self.reserves:
            return self.reserves[key]
        reverse = (token_out.lower(), token_in.lower())
        if reverse in self.reserves:
            reserve_out, reserve_in = self.reserves[reverse]
            return reserve_in, reserve_out
        raise InsufficientLiquidityError(f"no pool for {token_in}/{token_out}")

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    async def approve(self, token: str, spender: str, amount: int, nonce: int) -> str:
        self._maybe_fail("approve")
        self._record("approve", token=token, spender=spender, amount=amount, nonce=nonce)
        return self._tx(nonce)

    async def swap_exact_output(
        self,
        amount_out: int,
        max_amount_in: int,
        path: Sequence[str],
        recipient: str,
        deadline: int,
        nonce: int,
    ) -> str:
        self._maybe_fail("swap_exact_output")
        self._record(
            "swap_exact_output",
            amount_out=amount_out,
            max_amount_in=max_amount_in,
            path=list(path),
            recipient=recipient,
            deadline=deadline,
            nonce=nonce,
        )
        tx_hash = self._tx(nonce)
        token_out = path[-1]
        self.set_balance(token_out, recipient, self.balance_of(token_out, recipient) + amount_out)
        return tx_hash

    async def transfer(self, token: str, recipient: str, amount: int, nonce: int) -> str:
        self._maybe_fail("transfer")
        self._record("transfer", token=token, recipient=recipient, amount=amount, nonce=nonce)
        tx_hash = self._tx(nonce)
        self.set_balance(token, self._wallet, self.balance_of(token, self._wallet) - amount)
        self.set_balance(token, recipient, self.balance_of(token, recipient) + amount)
        return tx_hash

    # ------------------------------------------------------------------
    # events
    # ------------------------------------------------------------------

    async def transfer_single_events(
        self,
        contract: str,
        operator: str,
        from_block: int,
        from_address: Optional[str] = None,
        to_address: Optional[str] = None,
    ) -> list[ChainEvent]:
        self._maybe_fail("transfer_single_events")
        self._record("transfer_single_events", contract=contract, operator=operator, from_block=from_block)
        return [
            e for e in self.events
            if e.block_number >= from_block
            and e.operator.lower() == operator.lower()
            and (from_address is None or e.from_address.lower() == from_address.lower())
            and (to_address is None or e.to_address.lower() == to_address.lower())
        ]
