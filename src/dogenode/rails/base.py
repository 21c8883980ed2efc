"""Base interface for settlement rails.

A rail is a narrow adapter over one payment backend:
1. Connectivity check on startup (connect)
2. Destination validation
3. Hot wallet balance
4. Broadcast of a payment (send)
5. Confirmation tracking
6. Idempotence inquiry for sends whose outcome is unknown
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import httpx

from dogenode.errors import RailUnavailable
from dogenode.ledger.models import RailName

logger = logging.getLogger(__name__)

NATIVE_ADDRESS_RE = re.compile(r"^D[5-9A-HJ-NP-U][1-9A-HJ-NP-Za-km-z]{32}$")
TOKEN_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_native_address(address: Optional[str]) -> bool:
    """Dogecoin P2PKH address: base-58, 34 chars, leading ``D``."""
    return bool(address) and bool(NATIVE_ADDRESS_RE.match(address))


def is_token_address(address: Optional[str]) -> bool:
    """Hex EVM address: ``0x`` followed by 40 hex characters."""
    return bool(address) and bool(TOKEN_ADDRESS_RE.match(address))


@dataclass
class RailReceipt:
    """Outcome of a successful broadcast."""
    tx_hash: str
    explorer_url: Optional[str]
    network: str


class RpcError(Exception):
    """JSON-RPC error object returned by a node."""

    def __init__(self, code: Optional[int], message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


class SettlementRail(ABC):
    """Abstract base class for payment rails.

    Subclasses set ``name`` and implement the wire calls. The connectivity
    check runs once per process; a rail that fails it stays unavailable.
    """

    name: RailName
    min_confirmations: int = 6

    def __init__(
        self,
        enabled: bool = True,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize rail.

        Args:
            enabled: Whether the operator enabled this rail
            timeout: Timeout applied to every call, in seconds
            transport: Optional httpx transport (tests inject a mock)
        """
        self.enabled = enabled
        self.timeout = timeout
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._connected = False
        self._connect_attempted = False

    # Lifecycle
    def is_configured(self) -> bool:
        """Whether all settings needed to send are present."""
        return True

    def is_available(self) -> bool:
        """Enabled, configured and connected."""
        return self.enabled and self.is_configured() and self._connected

    async def connect(self) -> bool:
        """Run the connectivity check once."""
        if self._connect_attempted:
            return self._connected
        self._connect_attempted = True

        if not self.enabled:
            logger.info(f"Rail {self.name.value} disabled")
            return False

        if not self.is_configured():
            logger.warning(f"Rail {self.name.value} enabled but not configured")
            return False

        try:
            self._connected = await self._check_connectivity()
        except Exception as e:
            # Malformed responses count as unreachable too
            logger.error(f"Rail {self.name.value} connectivity check failed: {type(e).__name__}: {e}")
            self._connected = False

        if self._connected:
            logger.info(f"Rail {self.name.value} connected")
        else:
            logger.error(f"Rail {self.name.value} unavailable for this process")
        return self._connected

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def status(self) -> dict:
        return {
            "enabled": self.enabled,
            "configured": self.is_configured(),
            "available": self.is_available(),
            "min_confirmations": self.min_confirmations,
        }

    # Capabilities
    @abstractmethod
    async def _check_connectivity(self) -> bool:
        pass

    @abstractmethod
    async def validate_address(self, address: str) -> bool:
        """Validate destination address format for this rail."""
        pass

    @abstractmethod
    async def get_balance(self, address: Optional[str] = None) -> Decimal:
        """Balance of an address, or of the rail's hot wallet when None."""
        pass

    @abstractmethod
    async def send(self, to_address: str, amount: Decimal, reference: str) -> RailReceipt:
        """Broadcast a payment.

        Args:
            to_address: Destination
            amount: Amount to deliver (net of service fee)
            reference: Settlement record id, stored with the payment where the
                backend allows it so a lost response can be found again

        Raises:
            RailUnavailable, InvalidAddress, InsufficientRailLiquidity
        """
        pass

    @abstractmethod
    async def get_confirmations(self, tx_hash: str) -> int:
        """Current confirmation count.

        Raises:
            TransactionDropped: the network reports the transaction conflicted
                or reverted
        """
        pass

    async def get_block_height(self, tx_hash: str) -> Optional[int]:
        """Height of the block that included the transaction, None while unmined."""
        return None

    @abstractmethod
    async def lookup_broadcast(
        self, reference: str, tx_hash: Optional[str] = None
    ) -> Optional[RailReceipt]:
        """Find a payment made by an earlier send whose outcome is unknown.

        Returns None when the rail can show nothing was broadcast. Raises
        RailUnavailable when the question cannot be answered right now.
        """
        pass

    # HTTP helpers
    async def _get_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)
        return self._client

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """HTTP request with transport failures mapped to RailUnavailable."""
        client = await self._get_client()
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise RailUnavailable(f"{self.name.value} timed out after {self.timeout}s: {e}")
        except httpx.TransportError as e:
            raise RailUnavailable(f"{self.name.value} unreachable: {e}")

    async def _rpc(
        self,
        url: str,
        method: str,
        params: Optional[list] = None,
        auth: Optional[tuple[str, str]] = None,
    ) -> Any:
        """JSON-RPC call returning ``result``.

        Raises:
            RpcError: the node answered with an error object
            RailUnavailable: transport failure or a non-JSON error response
        """
        response = await self._request(
            "POST",
            url,
            json={
                "jsonrpc": "2.0" if auth is None else "1.0",
                "method": method,
                "params": params or [],
                "id": method,
            },
            auth=auth,
        )

        # Nodes report RPC errors with HTTP 500 and a JSON body
        try:
            data = response.json()
        except ValueError:
            raise RailUnavailable(
                f"{self.name.value} {method} failed: HTTP {response.status_code}"
            )

        if not isinstance(data, dict):
            raise RailUnavailable(f"{self.name.value} {method}: unexpected response")

        error = data.get("error")
        if error:
            if isinstance(error, dict):
                raise RpcError(error.get("code"), str(error.get("message", "")))
            raise RpcError(None, str(error))

        if response.status_code >= 400:
            raise RailUnavailable(
                f"{self.name.value} {method} failed: HTTP {response.status_code}"
            )

        return data.get("result")
