"""Exact-output quotes for a constant-product (Uniswap V2 style) pool."""

from __future__ import annotations

from dataclasses import dataclass

from cadenza.core.exceptions import InsufficientLiquidityError

_FEE_NUMERATOR = 997
_FEE_DENOMINATOR = 1000
_BPS = 10_000


def get_amount_in(amount_out: int, reserve_in: int, reserve_out: int) -> int:
    """Input needed to receive exactly ``amount_out``, pool fee included."""
    if amount_out <= 0:
        raise ValueError("amount_out must be positive")
    if reserve_in <= 0 or reserve_out <= 0 or amount_out >= reserve_out:
        raise InsufficientLiquidityError(
            f"Pool cannot supply {amount_out} (reserves in={reserve_in}, out={reserve_out})"
        )
    numerator = reserve_in * amount_out * _FEE_DENOMINATOR
    denominator = (reserve_out - amount_out) * _FEE_NUMERATOR
    return numerator // denominator + 1


def maximum_amount_in(amount_in: int, slippage_bps: int) -> int:
    """Upper bound on input after adding the slippage tolerance (floored)."""
    return amount_in * (_BPS + slippage_bps) // _BPS


@dataclass(frozen=True)
class ExactOutputTrade:
    """Single-pool route from ``token_in`` to an exact amount of ``token_out``."""

    token_in: str
    token_out: str
    amount_out: int
    amount_in: int
    max_amount_in: int

    @property
    def path(self) -> list[str]:
        return [self.token_in, self.token_out]

    @classmethod
    def quote(
        cls,
        token_in: str,
        token_out: str,
        amount_out: int,
        reserve_in: int,
        reserve_out: int,
        slippage_bps: int = 100,
    ) -> "ExactOutputTrade":
        amount_in = get_amount_in(amount_out, reserve_in, reserve_out)
        return cls(
            token_in=token_in,
            token_out=token_out,
            amount_out=amount_out,
            amount_in=amount_in,
            max_amount_in=maximum_amount_in(amount_in, slippage_bps),
        )
