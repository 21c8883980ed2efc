"""Dogechain explorer API rail.

The explorer only relays signed transactions. Building and signing the raw
transaction is delegated to an injected builder (for example a signer service
holding the hot wallet key); without one the rail is not available.
"""

import hashlib
import logging
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Optional

import httpx

from dogenode.errors import RailUnavailable, SettlementError, ValidationError
from dogenode.ledger.models import RailName
from dogenode.rails.base import RailReceipt, SettlementRail, is_native_address

logger = logging.getLogger(__name__)

DOGECHAIN_API_URL = "https://dogechain.info/api/v1"
DOGECHAIN_TX_URL = "https://dogechain.info/tx/{txid}"

# (to_address, amount, reference) -> signed raw transaction hex
RawTxBuilder = Callable[[str, Decimal, str], Awaitable[str]]


def txid_from_raw(raw_tx_hex: str) -> str:
    """Transaction id of a legacy raw transaction: reversed double SHA-256."""
    raw = bytes.fromhex(raw_tx_hex)
    digest = hashlib.sha256(hashlib.sha256(raw).digest()).digest()
    return digest[::-1].hex()


class ExplorerRail(SettlementRail):
    """dogechain.info REST API rail."""

    name = RailName.EXPLORER

    def __init__(
        self,
        api_url: str = DOGECHAIN_API_URL,
        hot_wallet_address: Optional[str] = None,
        raw_tx_builder: Optional[RawTxBuilder] = None,
        min_confirmations: int = 6,
        enabled: bool = True,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(enabled=enabled, timeout=timeout, transport=transport)
        self.api_url = api_url.rstrip("/")
        self.hot_wallet_address = hot_wallet_address
        self.raw_tx_builder = raw_tx_builder
        self.min_confirmations = min_confirmations

    def is_configured(self) -> bool:
        return self.raw_tx_builder is not None

    async def _check_connectivity(self) -> bool:
        response = await self._request("GET", f"{self.api_url}/stats")
        if response.status_code != 200:
            logger.error(f"Dogechain stats returned HTTP {response.status_code}")
            return False
        return True

    async def validate_address(self, address: str) -> bool:
        return is_native_address(address)

    async def get_balance(self, address: Optional[str] = None) -> Decimal:
        address = address or self.hot_wallet_address
        if not address:
            raise ValidationError("No address given and no hot wallet address configured")

        response = await self._request("GET", f"{self.api_url}/address/balance/{address}")
        if response.status_code != 200:
            raise SettlementError(f"Dogechain balance lookup failed: HTTP {response.status_code}")

        data = response.json()
        try:
            return Decimal(str(data["balance"]))
        except (KeyError, InvalidOperation):
            raise SettlementError(f"Unexpected balance response for {address}")

    async def send(self, to_address: str, amount: Decimal, reference: str) -> RailReceipt:
        """Build the raw transaction, then relay it via /pushtx."""
        if self.raw_tx_builder is None:
            raise RailUnavailable("No raw transaction builder configured")

        raw_tx = await self.raw_tx_builder(to_address, amount, reference)
        txid = txid_from_raw(raw_tx)

        try:
            response = await self._request(
                "POST", f"{self.api_url}/pushtx", json={"tx_hex": raw_tx}
            )
        except RailUnavailable as e:
            raise RailUnavailable(e.message, tx_hash=txid)

        if response.status_code >= 500:
            raise RailUnavailable(
                f"Dogechain pushtx failed: HTTP {response.status_code}", tx_hash=txid
            )
        if response.status_code != 200:
            raise SettlementError(
                f"Dogechain rejected transaction: HTTP {response.status_code} {response.text}"
            )

        data = response.json()
        broadcast_txid = data.get("txid") or txid
        if broadcast_txid != txid:
            logger.warning(f"Dogechain returned txid {broadcast_txid}, computed {txid}")

        logger.info(f"Explorer relayed {amount} DOGE to {to_address}: {broadcast_txid}")
        return RailReceipt(
            tx_hash=broadcast_txid,
            explorer_url=DOGECHAIN_TX_URL.format(txid=broadcast_txid),
            network="dogecoin",
        )

    async def _get_transaction(self, tx_hash: str) -> Optional[dict]:
        response = await self._request("GET", f"{self.api_url}/transaction/{tx_hash}")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise RailUnavailable(f"Dogechain transaction lookup failed: HTTP {response.status_code}")

        data = response.json()
        if not data.get("success", 1):
            return None
        return data.get("transaction")

    async def get_confirmations(self, tx_hash: str) -> int:
        tx = await self._get_transaction(tx_hash)
        if tx is None:
            return 0
        return int(tx.get("confirmations", 0))

    async def get_block_height(self, tx_hash: str) -> Optional[int]:
        tx = await self._get_transaction(tx_hash)
        if tx is None or tx.get("block_height") is None:
            return None
        return int(tx["block_height"])

    async def lookup_broadcast(
        self, reference: str, tx_hash: Optional[str] = None
    ) -> Optional[RailReceipt]:
        # Without a computed txid the builder never produced a transaction
        if not tx_hash:
            return None

        tx = await self._get_transaction(tx_hash)
        if tx is None:
            return None
        return RailReceipt(tx_hash, DOGECHAIN_TX_URL.format(txid=tx_hash), "dogecoin")
