"""Dogecoin Core node rail.

Talks to a wallet-enabled dogecoind over JSON-RPC with basic auth. The node
builds, signs and broadcasts payments itself (sendtoaddress).
"""

import logging
from decimal import Decimal
from typing import Optional

import httpx

from dogenode.errors import (
    InsufficientRailLiquidity,
    InvalidAddress,
    RailUnavailable,
    SettlementError,
    TransactionDropped,
)
from dogenode.ledger.models import RailName
from dogenode.rails.base import (
    RailReceipt,
    RpcError,
    SettlementRail,
    is_native_address,
)

logger = logging.getLogger(__name__)

DOGECHAIN_TX_URL = "https://dogechain.info/tx/{txid}"
SOCHAIN_TESTNET_TX_URL = "https://sochain.com/tx/DOGETEST/{txid}"

# dogecoind RPC error codes
RPC_INVALID_ADDRESS_OR_KEY = -5
RPC_WALLET_INSUFFICIENT_FUNDS = -6

# How far back lookup_broadcast scans the wallet history
LOOKUP_WINDOW = 200


class NodeRail(SettlementRail):
    """Dogecoin Core JSON-RPC rail."""

    name = RailName.NODE

    def __init__(
        self,
        rpc_url: str,
        rpc_user: str,
        rpc_password: str,
        network: str = "mainnet",
        min_confirmations: int = 6,
        enabled: bool = True,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(enabled=enabled, timeout=timeout, transport=transport)
        self.rpc_url = rpc_url
        self.rpc_user = rpc_user
        self.rpc_password = rpc_password
        self.network = network
        self.min_confirmations = min_confirmations

    @property
    def testnet(self) -> bool:
        return self.network != "mainnet"

    @property
    def network_label(self) -> str:
        return "dogecoin-testnet" if self.testnet else "dogecoin"

    def explorer_url(self, txid: str) -> str:
        template = SOCHAIN_TESTNET_TX_URL if self.testnet else DOGECHAIN_TX_URL
        return template.format(txid=txid)

    def is_configured(self) -> bool:
        return bool(self.rpc_url and self.rpc_user and self.rpc_password)

    async def _call(self, method: str, *params):
        return await self._rpc(
            self.rpc_url,
            method,
            list(params),
            auth=(self.rpc_user, self.rpc_password),
        )

    async def _check_connectivity(self) -> bool:
        try:
            info = await self._call("getblockchaininfo")
        except RpcError as e:
            logger.error(f"Dogecoin node rejected getblockchaininfo: {e}")
            return False

        logger.info(
            f"Connected to Dogecoin node: chain={info.get('chain')} blocks={info.get('blocks')}"
        )
        return True

    async def validate_address(self, address: str) -> bool:
        """Check address format, then ask the node when connected."""
        if not is_native_address(address):
            return False

        if not self.is_available():
            return True

        try:
            result = await self._call("validateaddress", address)
            return bool(result.get("isvalid"))
        except (RpcError, RailUnavailable) as e:
            logger.warning(f"validateaddress failed, using format check only: {e}")
            return True

    async def get_balance(self, address: Optional[str] = None) -> Decimal:
        try:
            if address:
                result = await self._call(
                    "getreceivedbyaddress", address, self.min_confirmations
                )
            else:
                result = await self._call("getbalance")
        except RpcError as e:
            raise SettlementError(f"Could not read node balance: {e.message}")

        return Decimal(str(result))

    async def send(self, to_address: str, amount: Decimal, reference: str) -> RailReceipt:
        """Send with sendtoaddress; the record id goes into the wallet comment."""
        try:
            txid = await self._call(
                "sendtoaddress",
                to_address,
                float(amount),
                reference,
                "",      # comment_to
                False,   # subtractfeefromamount
                True,    # replaceable
            )
        except RpcError as e:
            if e.code == RPC_INVALID_ADDRESS_OR_KEY:
                raise InvalidAddress(f"Node rejected destination {to_address}: {e.message}")
            if e.code == RPC_WALLET_INSUFFICIENT_FUNDS:
                raise InsufficientRailLiquidity(f"Node wallet cannot cover {amount}: {e.message}")
            raise SettlementError(f"sendtoaddress failed: {e}")

        logger.info(f"Node sent {amount} DOGE to {to_address}: {txid}")
        return RailReceipt(
            tx_hash=txid,
            explorer_url=self.explorer_url(txid),
            network=self.network_label,
        )

    async def get_confirmations(self, tx_hash: str) -> int:
        try:
            tx = await self._call("gettransaction", tx_hash)
        except RpcError as e:
            if e.code == RPC_INVALID_ADDRESS_OR_KEY:
                logger.warning(f"Node wallet does not know {tx_hash}")
                return 0
            raise SettlementError(f"gettransaction failed: {e}")

        confirmations = int(tx.get("confirmations", 0))
        if confirmations < 0:
            # Negative means the wallet saw a conflicting transaction confirm
            raise TransactionDropped(f"Transaction {tx_hash} conflicted ({confirmations})")
        return confirmations

    async def get_block_height(self, tx_hash: str) -> Optional[int]:
        try:
            tx = await self._call("gettransaction", tx_hash)
            if not tx.get("blockhash"):
                return None
            header = await self._call("getblockheader", tx["blockhash"])
        except RpcError as e:
            if e.code == RPC_INVALID_ADDRESS_OR_KEY:
                return None
            raise SettlementError(f"Block height lookup failed: {e}")
        return int(header["height"])

    async def lookup_broadcast(
        self, reference: str, tx_hash: Optional[str] = None
    ) -> Optional[RailReceipt]:
        if tx_hash:
            try:
                await self._call("gettransaction", tx_hash)
            except RpcError as e:
                if e.code != RPC_INVALID_ADDRESS_OR_KEY:
                    raise SettlementError(f"gettransaction failed: {e}")
            else:
                return RailReceipt(tx_hash, self.explorer_url(tx_hash), self.network_label)

        try:
            history = await self._call("listtransactions", "*", LOOKUP_WINDOW, 0)
        except RpcError as e:
            raise SettlementError(f"listtransactions failed: {e}")

        for entry in history or []:
            if entry.get("category") == "send" and entry.get("comment") == reference:
                txid = entry["txid"]
                logger.info(f"Found earlier broadcast for {reference}: {txid}")
                return RailReceipt(txid, self.explorer_url(txid), self.network_label)

        return None
