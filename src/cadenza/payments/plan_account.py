"""Read-through view of a payment plan's descriptor."""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Optional

from cadenza.core.exceptions import DescriptorUnavailable
from cadenza.core.protocols import ILedger
from cadenza.models.payments import PlanDescriptor

logger = logging.getLogger(__name__)


class PlanAccount:
    """Lazily loads a plan's DDO once and serves its attributes from memory.

    Mint and burn operators are protocol-wide addresses rather than DDO
    fields, so they are supplied at construction.
    """

    def __init__(
        self,
        ledger: ILedger,
        plan_id: str,
        mint_operator: Optional[str] = None,
        burn_operator: Optional[str] = None,
    ) -> None:
        self._ledger = ledger
        self.plan_id = plan_id
        self._mint_operator = mint_operator
        self._burn_operator = burn_operator
        self._descriptor: Optional[PlanDescriptor] = None
        self._lock = asyncio.Lock()

    async def load(self) -> PlanDescriptor:
        """Return the memoized descriptor, fetching it on first use."""
        if self._descriptor is not None:
            return self._descriptor
        async with self._lock:
            if self._descriptor is None:
                try:
                    ddo = await self._ledger.get_plan_descriptor(self.plan_id)
                except DescriptorUnavailable:
                    raise
                except Exception as exc:
                    raise DescriptorUnavailable(self.plan_id, str(exc)) from exc
                if not ddo:
                    raise DescriptorUnavailable(self.plan_id, "registry returned no DDO")
                self._descriptor = PlanDescriptor.from_ddo(self.plan_id, ddo)
                logger.debug("Loaded descriptor for plan %s", self.plan_id)
        return self._descriptor

    @property
    def loaded(self) -> bool:
        return self._descriptor is not None

    async def token_address(self) -> Optional[str]:
        return (await self.load()).token_address

    async def token_symbol(self) -> Optional[str]:
        return (await self.load()).token_symbol

    async def price(self) -> Optional[Decimal]:
        return (await self.load()).price

    async def owner_wallet(self) -> Optional[str]:
        return (await self.load()).owner_wallet

    async def credit_contract(self) -> Optional[str]:
        return (await self.load()).credit_contract

    async def credit_token_id(self) -> Optional[int]:
        return (await self.load()).credit_token_id

    async def network_id(self) -> Optional[int]:
        return (await self.load()).network_id

    async def mint_operator(self) -> Optional[str]:
        await self.load()
        return self._mint_operator

    async def burn_operator(self) -> Optional[str]:
        await self.load()
        return self._burn_operator


class PlanAccounts:
    """Keyed store of PlanAccount instances, one per plan for the whole run."""

    def __init__(
        self,
        ledger: ILedger,
        mint_operator: Optional[str] = None,
        burn_operator: Optional[str] = None,
    ) -> None:
        self._ledger = ledger
        self._mint_operator = mint_operator
        self._burn_operator = burn_operator
        self._accounts: dict[str, PlanAccount] = {}

    def get(self, plan_id: str) -> PlanAccount:
        account = self._accounts.get(plan_id)
        if account is None:
            account = PlanAccount(self._ledger, plan_id, self._mint_operator, self._burn_operator)
            self._accounts[plan_id] = account
        return account

    def __contains__(self, plan_id: str) -> bool:
        return plan_id in self._accounts

    def __len__(self) -> int:
        return len(self._accounts)
