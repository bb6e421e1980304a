"""IChain implementation over web3.py's async provider."""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from web3 import AsyncHTTPProvider, AsyncWeb3

from cadenza.core.config import ChainConfig
from cadenza.core.exceptions import InsufficientLiquidityError, TransientRemoteError
from cadenza.core.types import ZERO_ADDRESS
from cadenza.models.payments import ChainEvent

logger = logging.getLogger(__name__)

ERC20_ABI: list[dict[str, Any]] = [
    {"name": "decimals", "type": "function", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "uint8"}]},
    {"name": "symbol", "type": "function", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "string"}]},
    {"name": "balanceOf", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}], "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "approve", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "outputs": [{"name": "", "type": "bool"}]},
    {"name": "transfer", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "outputs": [{"name": "", "type": "bool"}]},
]

FACTORY_ABI: list[dict[str, Any]] = [
    {"name": "getPair", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "tokenA", "type": "address"}, {"name": "tokenB", "type": "address"}],
     "outputs": [{"name": "pair", "type": "address"}]},
]

PAIR_ABI: list[dict[str, Any]] = [
    {"name": "token0", "type": "function", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "address"}]},
    {"name": "getReserves", "type": "function", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "reserve0", "type": "uint112"}, {"name": "reserve1", "type": "uint112"},
                 {"name": "blockTimestampLast", "type": "uint32"}]},
]

ROUTER_ABI: list[dict[str, Any]] = [
    {"name": "swapTokensForExactTokens", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "amountOut", "type": "uint256"}, {"name": "amountInMax", "type": "uint256"},
                {"name": "path", "type": "address[]"}, {"name": "to", "type": "address"},
                {"name": "deadline", "type": "uint256"}],
     "outputs": [{"name": "amounts", "type": "uint256[]"}]},
]

ERC1155_ABI: list[dict[str, Any]] = [
    {"name": "TransferSingle", "type": "event", "anonymous": False,
     "inputs": [{"name": "operator", "type": "address", "indexed": True},
                {"name": "from", "type": "address", "indexed": True},
                {"name": "to", "type": "address", "indexed": True},
                {"name": "id", "type": "uint256", "indexed": False},
                {"name": "value", "type": "uint256", "indexed": False}]},
]


def _hex(value: Any) -> str:
    return value.to_0x_hex() if hasattr(value, "to_0x_hex") else str(value)


class Web3ChainClient:
    """Signs with a local key and waits for each receipt before returning."""

    def __init__(self, config: ChainConfig, w3: Optional[AsyncWeb3] = None) -> None:
        self._config = config
        self._w3 = w3 or AsyncWeb3(AsyncHTTPProvider(config.rpc_url))
        self._account = self._w3.eth.account.from_key(config.private_key)

    @property
    def wallet_address(self) -> str:
        return self._account.address

    def _contract(self, address: str, abi: list[dict[str, Any]]):
        return self._w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    async def _send(self, function: Any, nonce: int) -> str:
        tx = await function.build_transaction(
            {"from": self.wallet_address, "nonce": nonce, "chainId": self._config.network_id}
        )
        signed = self._account.sign_transaction(tx)
        tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = await self._w3.eth.wait_for_transaction_receipt(tx_hash)
        if receipt["status"] != 1:
            raise TransientRemoteError(f"Transaction {_hex(tx_hash)} reverted")
        logger.info("Transaction %s mined in block %s", _hex(tx_hash), receipt["blockNumber"])
        return _hex(tx_hash)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def block_number(self) -> int:
        return await self._w3.eth.block_number

    async def pending_nonce(self) -> int:
        return await self._w3.eth.get_transaction_count(self.wallet_address, "pending")

    async def token_decimals(self, token: str) -> int:
        return await self._contract(token, ERC20_ABI).functions.decimals().call()

    async def token_symbol(self, token: str) -> str:
        return await self._contract(token, ERC20_ABI).functions.symbol().call()

    async def token_balance(self, token: str, wallet: str) -> int:
        owner = AsyncWeb3.to_checksum_address(wallet)
        return await self._contract(token, ERC20_ABI).functions.balanceOf(owner).call()

    async def pair_reserves(self, token_in: str, token_out: str) -> tuple[int, int]:
        factory = self._contract(self._config.factory_address, FACTORY_ABI)
        pair_address = await factory.functions.getPair(
            AsyncWeb3.to_checksum_address(token_in), AsyncWeb3.to_checksum_address(token_out)
        ).call()
        if pair_address.lower() == ZERO_ADDRESS:
            raise InsufficientLiquidityError(f"No pool for {token_in}/{token_out}")
        pair = self._contract(pair_address, PAIR_ABI)
        reserve0, reserve1, _ = await pair.functions.getReserves().call()
        token0 = await pair.functions.token0().call()
        if token0.lower() == token_in.lower():
            return reserve0, reserve1
        return reserve1, reserve0

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    async def approve(self, token: str, spender: str, amount: int, nonce: int) -> str:
        function = self._contract(token, ERC20_ABI).functions.approve(
            AsyncWeb3.to_checksum_address(spender), amount
        )
        return await self._send(function, nonce)

    async def swap_exact_output(
        self,
        amount_out: int,
        max_amount_in: int,
        path: Sequence[str],
        recipient: str,
        deadline: int,
        nonce: int,
    ) -> str:
        router = self._contract(self._config.router_address, ROUTER_ABI)
        function = router.functions.swapTokensForExactTokens(
            amount_out,
            max_amount_in,
            [AsyncWeb3.to_checksum_address(token) for token in path],
            AsyncWeb3.to_checksum_address(recipient),
            deadline,
        )
        return await self._send(function, nonce)

    async def transfer(self, token: str, recipient: str, amount: int, nonce: int) -> str:
        function = self._contract(token, ERC20_ABI).functions.transfer(
            AsyncWeb3.to_checksum_address(recipient), amount
        )
        return await self._send(function, nonce)

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
        filters: dict[str, Any] = {"operator": AsyncWeb3.to_checksum_address(operator)}
        if from_address is not None:
            filters["from"] = AsyncWeb3.to_checksum_address(from_address)
        if to_address is not None:
            filters["to"] = AsyncWeb3.to_checksum_address(to_address)
        erc1155 = self._contract(contract, ERC1155_ABI)
        logs = await erc1155.events.TransferSingle.get_logs(argument_filters=filters, from_block=from_block)
        return [
            ChainEvent(
                tx_hash=_hex(log["transactionHash"]),
                block_number=log["blockNumber"],
                operator=log["args"]["operator"],
                from_address=log["args"]["from"],
                to_address=log["args"]["to"],
                token_id=log["args"]["id"],
                value=log["args"]["value"],
            )
            for log in logs
        ]
