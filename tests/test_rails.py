"""Tests for the node, explorer and token rails against mocked HTTP backends."""

import base64
import json
from decimal import Decimal

import httpx
import pytest
from web3 import Web3

from dogenode.errors import (
    InsufficientRailLiquidity,
    InvalidAddress,
    RailUnavailable,
    SettlementError,
    TransactionDropped,
)
from dogenode.rails.explorer import ExplorerRail, txid_from_raw
from dogenode.rails.factory import build_rails
from dogenode.rails.node import NodeRail
from dogenode.rails.token import TokenRail

from conftest import NATIVE_ADDRESS, TEST_PRIVATE_KEY, TOKEN_ADDRESS

WDOGE_CONTRACT = "0xbA2aE424d960c26247Dd6c32edC70B295c744C43"
TXID = "a" * 64


def rpc_result(result, status_code=200):
    return httpx.Response(status_code, json={"result": result, "error": None, "id": "x"})


def rpc_error(code, message):
    return httpx.Response(
        500, json={"result": None, "error": {"code": code, "message": message}, "id": "x"}
    )


class RpcBackend:
    """Mock JSON-RPC node answering per method."""

    def __init__(self, handlers: dict):
        self.handlers = handlers
        self.calls: list[dict] = []
        self.headers: list[httpx.Headers] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append(body)
        self.headers.append(request.headers)
        handler = self.handlers[body["method"]]
        if callable(handler):
            return handler(body["params"])
        return handler

    @property
    def methods(self) -> list[str]:
        return [c["method"] for c in self.calls]


def node_rail(backend, **kwargs) -> NodeRail:
    return NodeRail(
        rpc_url="http://node.test:22555",
        rpc_user="rpcuser",
        rpc_password="rpcpass",
        transport=httpx.MockTransport(backend),
        **kwargs,
    )


class TestNodeRail:
    """Dogecoin Core JSON-RPC rail."""

    @pytest.mark.asyncio
    async def test_connect(self):
        backend = RpcBackend({"getblockchaininfo": rpc_result({"chain": "main", "blocks": 5000000})})
        rail = node_rail(backend)

        assert await rail.connect() is True
        assert rail.is_available()

        # Basic auth on every call
        expected = base64.b64encode(b"rpcuser:rpcpass").decode()
        assert backend.headers[0]["authorization"] == f"Basic {expected}"

    @pytest.mark.asyncio
    async def test_connect_runs_once(self):
        def unreachable(request):
            raise httpx.ConnectError("connection refused")

        rail = NodeRail(
            "http://node.test:22555", "u", "p", transport=httpx.MockTransport(unreachable)
        )

        assert await rail.connect() is False
        assert await rail.connect() is False
        assert not rail.is_available()

    @pytest.mark.asyncio
    async def test_connect_with_malformed_response(self):
        backend = RpcBackend({"getblockchaininfo": rpc_result(None)})
        rail = node_rail(backend)

        assert await rail.connect() is False
        assert not rail.is_available()

    @pytest.mark.asyncio
    async def test_disabled_rail_never_connects(self):
        backend = RpcBackend({})
        rail = node_rail(backend, enabled=False)

        assert await rail.connect() is False
        assert backend.calls == []

    def test_not_configured_without_password(self):
        rail = NodeRail("http://node.test:22555", "u", "")

        assert not rail.is_configured()

    @pytest.mark.asyncio
    async def test_send(self):
        backend = RpcBackend({"sendtoaddress": rpc_result(TXID)})
        rail = node_rail(backend)

        receipt = await rail.send(NATIVE_ADDRESS, Decimal("49"), reference="withdrawal_abc")

        assert receipt.tx_hash == TXID
        assert receipt.explorer_url == f"https://dogechain.info/tx/{TXID}"
        assert receipt.network == "dogecoin"
        params = backend.calls[0]["params"]
        assert params[:3] == [NATIVE_ADDRESS, 49.0, "withdrawal_abc"]

    @pytest.mark.asyncio
    async def test_send_testnet_explorer(self):
        backend = RpcBackend({"sendtoaddress": rpc_result(TXID)})
        rail = node_rail(backend, network="testnet")

        receipt = await rail.send(NATIVE_ADDRESS, Decimal("1"), reference="r")

        assert "sochain.com/tx/DOGETEST" in receipt.explorer_url
        assert receipt.network == "dogecoin-testnet"

    @pytest.mark.asyncio
    async def test_send_wallet_insufficient_funds(self):
        rail = node_rail(RpcBackend({"sendtoaddress": rpc_error(-6, "Insufficient funds")}))

        with pytest.raises(InsufficientRailLiquidity):
            await rail.send(NATIVE_ADDRESS, Decimal("49"), reference="r")

    @pytest.mark.asyncio
    async def test_send_invalid_address(self):
        rail = node_rail(RpcBackend({"sendtoaddress": rpc_error(-5, "Invalid address")}))

        with pytest.raises(InvalidAddress):
            await rail.send(NATIVE_ADDRESS, Decimal("49"), reference="r")

    @pytest.mark.asyncio
    async def test_send_other_rpc_error(self):
        rail = node_rail(RpcBackend({"sendtoaddress": rpc_error(-4, "Transaction too large")}))

        with pytest.raises(SettlementError) as exc_info:
            await rail.send(NATIVE_ADDRESS, Decimal("49"), reference="r")

        assert type(exc_info.value) is SettlementError
        assert "Transaction too large" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_timeout_is_rail_unavailable(self):
        def slow(request):
            raise httpx.ReadTimeout("timed out")

        rail = NodeRail("http://node.test:22555", "u", "p", transport=httpx.MockTransport(slow))

        with pytest.raises(RailUnavailable):
            await rail.send(NATIVE_ADDRESS, Decimal("49"), reference="r")

    @pytest.mark.asyncio
    async def test_non_json_error_is_rail_unavailable(self):
        rail = NodeRail(
            "http://node.test:22555",
            "u",
            "p",
            transport=httpx.MockTransport(lambda r: httpx.Response(502, text="Bad Gateway")),
        )

        with pytest.raises(RailUnavailable):
            await rail.get_balance()

    @pytest.mark.asyncio
    async def test_confirmations(self):
        backend = RpcBackend({"gettransaction": rpc_result({"txid": TXID, "confirmations": 4})})

        assert await node_rail(backend).get_confirmations(TXID) == 4

    @pytest.mark.asyncio
    async def test_conflicted_transaction_is_dropped(self):
        backend = RpcBackend({"gettransaction": rpc_result({"txid": TXID, "confirmations": -1})})

        with pytest.raises(TransactionDropped):
            await node_rail(backend).get_confirmations(TXID)

    @pytest.mark.asyncio
    async def test_unknown_transaction_has_no_confirmations(self):
        backend = RpcBackend({"gettransaction": rpc_error(-5, "Invalid or non-wallet transaction id")})

        assert await node_rail(backend).get_confirmations(TXID) == 0

    @pytest.mark.asyncio
    async def test_block_height(self):
        backend = RpcBackend({
            "gettransaction": rpc_result({"txid": TXID, "confirmations": 2, "blockhash": "b" * 64}),
            "getblockheader": rpc_result({"hash": "b" * 64, "height": 5000001}),
        })

        assert await node_rail(backend).get_block_height(TXID) == 5000001
        assert backend.calls[1]["params"] == ["b" * 64]

    @pytest.mark.asyncio
    async def test_unmined_transaction_has_no_block_height(self):
        backend = RpcBackend({"gettransaction": rpc_result({"txid": TXID, "confirmations": 0})})

        assert await node_rail(backend).get_block_height(TXID) is None
        assert backend.methods == ["gettransaction"]

    @pytest.mark.asyncio
    async def test_lookup_broadcast_by_comment(self):
        backend = RpcBackend({
            "listtransactions": rpc_result([
                {"category": "receive", "comment": "withdrawal_abc", "txid": "b" * 64},
                {"category": "send", "comment": "withdrawal_other", "txid": "c" * 64},
                {"category": "send", "comment": "withdrawal_abc", "txid": TXID},
            ]),
        })

        receipt = await node_rail(backend).lookup_broadcast("withdrawal_abc")

        assert receipt.tx_hash == TXID
        assert backend.calls[0]["params"] == ["*", 200, 0]

    @pytest.mark.asyncio
    async def test_lookup_broadcast_nothing_sent(self):
        backend = RpcBackend({"listtransactions": rpc_result([])})

        assert await node_rail(backend).lookup_broadcast("withdrawal_abc") is None

    @pytest.mark.asyncio
    async def test_validate_address(self):
        backend = RpcBackend({
            "getblockchaininfo": rpc_result({"chain": "main"}),
            "validateaddress": rpc_result({"isvalid": False}),
        })
        rail = node_rail(backend)

        # Format check only until connected
        assert await rail.validate_address(NATIVE_ADDRESS) is True
        assert await rail.validate_address(TOKEN_ADDRESS) is False

        await rail.connect()
        assert await rail.validate_address(NATIVE_ADDRESS) is False
        assert backend.methods == ["getblockchaininfo", "validateaddress"]


class TestExplorerRail:
    """Dogechain explorer API rail."""

    RAW_TX = "0100000001abcdef"

    @staticmethod
    async def builder(to_address, amount, reference):
        return TestExplorerRail.RAW_TX

    def explorer(self, handler, builder=True) -> ExplorerRail:
        return ExplorerRail(
            api_url="https://dogechain.test/api/v1/",
            hot_wallet_address=NATIVE_ADDRESS,
            raw_tx_builder=self.builder if builder else None,
            transport=httpx.MockTransport(handler),
        )

    def test_txid_from_raw(self):
        txid = txid_from_raw(self.RAW_TX)

        assert len(txid) == 64
        assert txid == txid_from_raw(self.RAW_TX.upper())

    @pytest.mark.asyncio
    async def test_not_configured_without_builder(self):
        rail = self.explorer(lambda r: httpx.Response(200, json={}), builder=False)

        assert not rail.is_configured()
        assert await rail.connect() is False

    @pytest.mark.asyncio
    async def test_connect(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={"success": 1})

        rail = self.explorer(handler)

        assert await rail.connect() is True
        assert seen == ["/api/v1/stats"]

    @pytest.mark.asyncio
    async def test_send(self):
        expected_txid = txid_from_raw(self.RAW_TX)
        posted = []

        def handler(request):
            posted.append(json.loads(request.content))
            return httpx.Response(200, json={"success": 1, "txid": expected_txid})

        receipt = await self.explorer(handler).send(NATIVE_ADDRESS, Decimal("10"), "withdrawal_x")

        assert posted == [{"tx_hex": self.RAW_TX}]
        assert receipt.tx_hash == expected_txid
        assert receipt.explorer_url.endswith(expected_txid)

    @pytest.mark.asyncio
    async def test_server_error_carries_txid(self):
        rail = self.explorer(lambda r: httpx.Response(503, text="unavailable"))

        with pytest.raises(RailUnavailable) as exc_info:
            await rail.send(NATIVE_ADDRESS, Decimal("10"), "withdrawal_x")

        assert exc_info.value.tx_hash == txid_from_raw(self.RAW_TX)

    @pytest.mark.asyncio
    async def test_rejected_transaction(self):
        rail = self.explorer(lambda r: httpx.Response(400, json={"success": 0, "error": "bad tx"}))

        with pytest.raises(SettlementError) as exc_info:
            await rail.send(NATIVE_ADDRESS, Decimal("10"), "withdrawal_x")

        assert not isinstance(exc_info.value, RailUnavailable)

    @pytest.mark.asyncio
    async def test_balance(self):
        rail = self.explorer(lambda r: httpx.Response(200, json={"balance": "1234.5", "success": 1}))

        assert await rail.get_balance() == Decimal("1234.5")

    @pytest.mark.asyncio
    async def test_confirmations(self):
        def handler(request):
            if request.url.path.endswith(TXID):
                return httpx.Response(
                    200, json={"success": 1, "transaction": {"hash": TXID, "confirmations": 7}}
                )
            return httpx.Response(404, json={"success": 0})

        rail = self.explorer(handler)

        assert await rail.get_confirmations(TXID) == 7
        assert await rail.get_confirmations("f" * 64) == 0
        assert await rail.lookup_broadcast("withdrawal_x", TXID) is not None
        assert await rail.lookup_broadcast("withdrawal_x", "f" * 64) is None
        assert await rail.lookup_broadcast("withdrawal_x") is None

    @pytest.mark.asyncio
    async def test_block_height(self):
        def handler(request):
            return httpx.Response(
                200,
                json={"success": 1, "transaction": {"hash": TXID, "confirmations": 3, "block_height": 4999999}},
            )

        assert await self.explorer(handler).get_block_height(TXID) == 4999999


class TestTokenRail:
    """Wrapped DOGE contract rail."""

    def token(self, backend, **kwargs) -> TokenRail:
        return TokenRail(
            rpc_url="https://bsc.test",
            contract_address=WDOGE_CONTRACT,
            private_key=TEST_PRIVATE_KEY,
            gas_price_gwei=Decimal("3"),
            transport=httpx.MockTransport(backend),
            **kwargs,
        )

    @staticmethod
    def broadcast(params):
        # Legacy transaction hash is keccak of the signed payload
        return rpc_result(Web3.to_hex(Web3.keccak(hexstr=params[0])))

    def test_units(self):
        rail = self.token(RpcBackend({}))

        assert rail.to_units(Decimal("1.5")) == 1500000000000000000
        assert rail.from_units(2 * 10**18) == Decimal("2")
        assert rail.address == Web3.to_checksum_address(rail.address)

    def test_not_configured_without_key(self):
        rail = TokenRail(rpc_url="https://bsc.test", contract_address=WDOGE_CONTRACT)

        assert not rail.is_configured()

    @pytest.mark.asyncio
    async def test_connect_checks_chain_id(self):
        assert await self.token(RpcBackend({"eth_chainId": rpc_result("0x38")})).connect() is True
        assert await self.token(RpcBackend({"eth_chainId": rpc_result("0x61")})).connect() is False

    @pytest.mark.asyncio
    async def test_connect_with_malformed_chain_id(self):
        rail = self.token(RpcBackend({"eth_chainId": rpc_result(None)}))

        assert await rail.connect() is False
        assert not rail.is_available()

    @pytest.mark.asyncio
    async def test_send(self):
        backend = RpcBackend({
            "eth_call": rpc_result(hex(1000 * 10**18)),
            "eth_getTransactionCount": rpc_result("0x7"),
            "eth_sendRawTransaction": self.broadcast,
        })
        rail = self.token(backend)

        receipt = await rail.send(TOKEN_ADDRESS, Decimal("49"), reference="withdrawal_t")

        assert backend.methods == ["eth_call", "eth_getTransactionCount", "eth_sendRawTransaction"]
        assert receipt.tx_hash.startswith("0x")
        assert len(receipt.tx_hash) == 66
        assert receipt.explorer_url == f"https://bscscan.com/tx/{receipt.tx_hash}"
        assert receipt.network == "bsc"

        balance_call = backend.calls[0]["params"][0]
        assert balance_call["to"] == WDOGE_CONTRACT
        assert balance_call["data"].startswith("0x70a08231")

    @pytest.mark.asyncio
    async def test_send_uses_node_gas_price_when_unset(self):
        backend = RpcBackend({
            "eth_call": rpc_result(hex(1000 * 10**18)),
            "eth_getTransactionCount": rpc_result("0x0"),
            "eth_gasPrice": rpc_result(hex(5 * 10**9)),
            "eth_sendRawTransaction": self.broadcast,
        })
        rail = self.token(backend)
        rail.gas_price_gwei = None

        await rail.send(TOKEN_ADDRESS, Decimal("1"), reference="withdrawal_t")

        assert "eth_gasPrice" in backend.methods

    @pytest.mark.asyncio
    async def test_send_insufficient_token_balance(self):
        backend = RpcBackend({"eth_call": rpc_result("0x0")})

        with pytest.raises(InsufficientRailLiquidity):
            await self.token(backend).send(TOKEN_ADDRESS, Decimal("49"), reference="r")

        assert "eth_sendRawTransaction" not in backend.methods

    @pytest.mark.asyncio
    async def test_broadcast_timeout_carries_hash(self):
        def timeout(params):
            raise httpx.ReadTimeout("timed out")

        backend = RpcBackend({
            "eth_call": rpc_result(hex(1000 * 10**18)),
            "eth_getTransactionCount": rpc_result("0x1"),
            "eth_sendRawTransaction": timeout,
        })

        with pytest.raises(RailUnavailable) as exc_info:
            await self.token(backend).send(TOKEN_ADDRESS, Decimal("1"), reference="r")

        assert exc_info.value.tx_hash.startswith("0x")

    @pytest.mark.asyncio
    async def test_confirmations(self):
        backend = RpcBackend({
            "eth_getTransactionReceipt": rpc_result({"status": "0x1", "blockNumber": "0x10"}),
            "eth_blockNumber": rpc_result("0x1e"),
        })

        assert await self.token(backend).get_confirmations("0x" + "ab" * 32) == 15
        assert await self.token(backend).get_block_height("0x" + "ab" * 32) == 16

    @pytest.mark.asyncio
    async def test_pending_transfer(self):
        backend = RpcBackend({"eth_getTransactionReceipt": rpc_result(None)})

        assert await self.token(backend).get_confirmations("0x" + "ab" * 32) == 0
        assert await self.token(backend).get_block_height("0x" + "ab" * 32) is None

    @pytest.mark.asyncio
    async def test_reverted_transfer_is_dropped(self):
        backend = RpcBackend({
            "eth_getTransactionReceipt": rpc_result({"status": "0x0", "blockNumber": "0x10"}),
        })

        with pytest.raises(TransactionDropped):
            await self.token(backend).get_confirmations("0x" + "ab" * 32)


class TestRailFactory:
    """Building rails from settings."""

    def test_build_rails(self, settings):
        rails = build_rails(settings)

        assert [type(r) for r in rails] == [NodeRail, ExplorerRail, TokenRail]
        assert all(not r.enabled for r in rails)
        assert rails[0].rpc_url == "http://localhost:22555"
        assert rails[2].min_confirmations == 15
