"""Plan descriptor, balance and on-chain settlement records."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import BaseModel

_SALES_SERVICE_TYPE = "nft-sales"
_SALES_SERVICE_INDEX = 2


def _sales_service(ddo: dict[str, Any]) -> dict[str, Any]:
    """Return the credit-sales service of a plan DDO, or an empty dict."""
    services = ddo.get("service") or []
    if not isinstance(services, list):
        return {}
    for service in services:
        if isinstance(service, dict) and service.get("type") == _SALES_SERVICE_TYPE:
            return service
    if len(services) > _SALES_SERVICE_INDEX and isinstance(services[_SALES_SERVICE_INDEX], dict):
        return services[_SALES_SERVICE_INDEX]
    return {}


def token_id_from_plan_id(plan_id: str) -> Optional[int]:
    """Credit token id: the plan DID's hex suffix read as an integer."""
    suffix = plan_id.removeprefix("did:nv:")
    try:
        return int(suffix, 16)
    except ValueError:
        return None


class PlanDescriptor(BaseModel):
    """Terms of a payment plan, extracted once from its DDO."""

    plan_id: str
    token_address: Optional[str] = None
    token_symbol: Optional[str] = None
    price: Optional[Decimal] = None  # in whole settlement-token units
    owner_wallet: Optional[str] = None
    credit_contract: Optional[str] = None
    credit_token_id: Optional[int] = None
    network_id: Optional[int] = None

    @classmethod
    def from_ddo(cls, plan_id: str, ddo: dict[str, Any]) -> "PlanDescriptor":
        attributes = _sales_service(ddo).get("attributes") or {}
        info = attributes.get("additionalInformation") or {}

        price: Optional[Decimal] = None
        raw_price = info.get("priceHighestDenomination")
        if raw_price is not None:
            try:
                price = Decimal(str(raw_price))
            except InvalidOperation:
                price = None

        owner = None
        public_keys = ddo.get("publicKey") or []
        if public_keys and isinstance(public_keys[0], dict):
            owner = public_keys[0].get("owner")

        credit_contract = None
        template = attributes.get("serviceAgreementTemplate") or {}
        for condition in template.get("conditions") or []:
            if condition.get("name") != "transferNFT":
                continue
            for param in condition.get("parameters") or []:
                if param.get("name") == "_contractAddress":
                    credit_contract = param.get("value")

        network_id = None
        networks = (ddo.get("_nvm") or {}).get("networks") or {}
        for key in networks:
            try:
                network_id = int(key)
            except (TypeError, ValueError):
                continue
            break

        return cls(
            plan_id=plan_id,
            token_address=info.get("erc20TokenAddress"),
            token_symbol=info.get("symbol"),
            price=price,
            owner_wallet=owner,
            credit_contract=credit_contract,
            credit_token_id=token_id_from_plan_id(plan_id),
            network_id=network_id,
        )


class BalanceSnapshot(BaseModel):
    """Credit balance of a plan for the calling account."""

    balance: int
    is_owner: bool = False

    def covers(self, required: int) -> bool:
        return self.is_owner or self.balance >= required


class OrderResult(BaseModel):
    success: bool
    agreement_id: Optional[str] = None


class SwapResult(BaseModel):
    """Outcome of approve → swap → transfer on the orchestrator wallet."""

    success: bool = False
    approve_tx_hash: Optional[str] = None
    swap_tx_hash: Optional[str] = None
    transfer_tx_hash: Optional[str] = None
    amount_out: int = 0
    max_amount_in: int = 0


class ChainEvent(BaseModel):
    """A decoded ERC-1155 ``TransferSingle`` log."""

    tx_hash: str
    block_number: int
    operator: str
    from_address: str
    to_address: str
    token_id: int
    value: int


class SettlementReceipt(BaseModel):
    """What settlement did to secure credit for one stage."""

    plan_id: str
    balance: int
    required: int
    ordered: bool = False
    swap: Optional[SwapResult] = None
    order: Optional[OrderResult] = None
    mint_event: Optional[ChainEvent] = None

    @property
    def confirmed(self) -> bool:
        """True when no order was needed or the mint event was observed."""
        return not self.ordered or self.mint_event is not None
