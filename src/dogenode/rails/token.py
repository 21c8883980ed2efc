"""Wrapped DOGE (BEP-20) rail on BNB Smart Chain.

Transfers are signed locally with eth_account and broadcast through any BSC
JSON-RPC endpoint with eth_sendRawTransaction.
"""

import logging
from decimal import Decimal
from typing import Optional

import httpx
from eth_account import Account
from web3 import Web3

from dogenode.errors import (
    InsufficientRailLiquidity,
    RailUnavailable,
    SettlementError,
    TransactionDropped,
)
from dogenode.ledger.models import RailName
from dogenode.rails.base import (
    RailReceipt,
    RpcError,
    SettlementRail,
    is_token_address,
)

logger = logging.getLogger(__name__)

BSC_MAINNET_CHAIN_ID = 56
BSCSCAN_TX_URL = "https://bscscan.com/tx/{tx_hash}"
BSCSCAN_TESTNET_TX_URL = "https://testnet.bscscan.com/tx/{tx_hash}"

# ERC-20 function selectors
TRANSFER_SELECTOR = "0xa9059cbb"    # transfer(address,uint256)
BALANCE_OF_SELECTOR = "0x70a08231"  # balanceOf(address)


def _pad_address(address: str) -> str:
    return address.lower().replace("0x", "").rjust(64, "0")


def _pad_uint(value: int) -> str:
    return hex(value)[2:].rjust(64, "0")


class TokenRail(SettlementRail):
    """Wrapped DOGE contract rail."""

    name = RailName.TOKEN

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        private_key: Optional[str] = None,
        chain_id: int = BSC_MAINNET_CHAIN_ID,
        decimals: int = 18,
        gas_limit: int = 100000,
        gas_price_gwei: Optional[Decimal] = None,
        min_confirmations: int = 15,
        enabled: bool = True,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(enabled=enabled, timeout=timeout, transport=transport)
        self.rpc_url = rpc_url
        self.contract_address = contract_address
        self.private_key = private_key
        self.chain_id = chain_id
        self.decimals = decimals
        self.gas_limit = gas_limit
        self.gas_price_gwei = gas_price_gwei
        self.min_confirmations = min_confirmations
        self._account = Account.from_key(private_key) if private_key else None

    @property
    def address(self) -> Optional[str]:
        """Hot wallet address derived from the private key."""
        return self._account.address if self._account else None

    @property
    def network_label(self) -> str:
        return "bsc" if self.chain_id == BSC_MAINNET_CHAIN_ID else "bsc-testnet"

    def explorer_url(self, tx_hash: str) -> str:
        template = BSCSCAN_TX_URL if self.chain_id == BSC_MAINNET_CHAIN_ID else BSCSCAN_TESTNET_TX_URL
        return template.format(tx_hash=tx_hash)

    def is_configured(self) -> bool:
        return bool(self.rpc_url and is_token_address(self.contract_address) and self._account)

    def to_units(self, amount: Decimal) -> int:
        return int(Decimal(amount) * (Decimal(10) ** self.decimals))

    def from_units(self, units: int) -> Decimal:
        return Decimal(units) / (Decimal(10) ** self.decimals)

    async def _call(self, method: str, *params):
        return await self._rpc(self.rpc_url, method, list(params))

    async def _check_connectivity(self) -> bool:
        try:
            chain_id = int(await self._call("eth_chainId"), 16)
        except RpcError as e:
            logger.error(f"BSC node rejected eth_chainId: {e}")
            return False

        if chain_id != self.chain_id:
            logger.error(f"BSC RPC reports chain {chain_id}, expected {self.chain_id}")
            return False
        return True

    async def validate_address(self, address: str) -> bool:
        return is_token_address(address)

    async def get_balance(self, address: Optional[str] = None) -> Decimal:
        """Wrapped DOGE balance via balanceOf."""
        address = address or self.address
        try:
            result = await self._call(
                "eth_call",
                {
                    "to": self.contract_address,
                    "data": BALANCE_OF_SELECTOR + _pad_address(address),
                },
                "latest",
            )
        except RpcError as e:
            raise SettlementError(f"balanceOf failed: {e.message}")

        return self.from_units(int(result or "0x0", 16))

    async def _get_gas_price(self) -> int:
        """Gas price in wei, fixed by config or asked from the node."""
        if self.gas_price_gwei is not None:
            return Web3.to_wei(self.gas_price_gwei, "gwei")
        return int(await self._call("eth_gasPrice"), 16)

    async def send(self, to_address: str, amount: Decimal, reference: str) -> RailReceipt:
        """Sign and broadcast a BEP-20 transfer."""
        units = self.to_units(amount)

        try:
            balance = await self.get_balance()
            if balance < amount:
                raise InsufficientRailLiquidity(
                    f"Hot wallet holds {balance} wDOGE, {amount} required"
                )

            nonce = int(await self._call("eth_getTransactionCount", self.address, "pending"), 16)
            gas_price = await self._get_gas_price()
        except RpcError as e:
            raise SettlementError(f"Could not prepare transfer: {e}")

        tx = {
            "nonce": nonce,
            "gasPrice": gas_price,
            "gas": self.gas_limit,
            "to": Web3.to_checksum_address(self.contract_address),
            "value": 0,
            "data": TRANSFER_SELECTOR + _pad_address(to_address) + _pad_uint(units),
            "chainId": self.chain_id,
        }
        signed = self._account.sign_transaction(tx)
        tx_hash = Web3.to_hex(signed.hash)

        try:
            result = await self._call("eth_sendRawTransaction", Web3.to_hex(signed.raw_transaction))
        except RailUnavailable as e:
            raise RailUnavailable(e.message, tx_hash=tx_hash)
        except RpcError as e:
            message = e.message.lower()
            if "already known" in message:
                result = tx_hash
            elif "insufficient funds" in message:
                raise InsufficientRailLiquidity(f"Hot wallet cannot pay gas: {e.message}")
            else:
                raise SettlementError(f"eth_sendRawTransaction failed: {e}")

        tx_hash = result or tx_hash
        logger.info(f"Token rail sent {amount} wDOGE to {to_address} ({reference}): {tx_hash}")
        return RailReceipt(
            tx_hash=tx_hash,
            explorer_url=self.explorer_url(tx_hash),
            network=self.network_label,
        )

    async def get_confirmations(self, tx_hash: str) -> int:
        try:
            receipt = await self._call("eth_getTransactionReceipt", tx_hash)
            if receipt is None:
                return 0

            if int(receipt.get("status", "0x1"), 16) == 0:
                raise TransactionDropped(f"Transfer {tx_hash} reverted")

            current_block = int(await self._call("eth_blockNumber"), 16)
        except RpcError as e:
            raise SettlementError(f"Receipt lookup failed: {e}")

        tx_block = int(receipt["blockNumber"], 16)
        return max(current_block - tx_block + 1, 0)

    async def get_block_height(self, tx_hash: str) -> Optional[int]:
        try:
            receipt = await self._call("eth_getTransactionReceipt", tx_hash)
        except RpcError as e:
            raise SettlementError(f"Receipt lookup failed: {e}")
        if receipt is None:
            return None
        return int(receipt["blockNumber"], 16)

    async def lookup_broadcast(
        self, reference: str, tx_hash: Optional[str] = None
    ) -> Optional[RailReceipt]:
        # Signing happens before broadcast, so an unknown outcome always has a hash
        if not tx_hash:
            return None

        try:
            tx = await self._call("eth_getTransactionByHash", tx_hash)
        except RpcError as e:
            raise SettlementError(f"eth_getTransactionByHash failed: {e}")

        if tx is None:
            return None
        return RailReceipt(tx_hash, self.explorer_url(tx_hash), self.network_label)
