"""Factory for building the configured rails."""

from typing import Optional

import httpx

from dogenode.config import Settings, get_settings
from dogenode.rails.base import SettlementRail
from dogenode.rails.explorer import ExplorerRail, RawTxBuilder
from dogenode.rails.node import NodeRail
from dogenode.rails.selector import RailSelector
from dogenode.rails.token import TokenRail


def build_rails(
    settings: Optional[Settings] = None,
    raw_tx_builder: Optional[RawTxBuilder] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[SettlementRail]:
    """Build all three rails in preference order.

    Disabled rails are still built so health checks can report them.
    """
    settings = settings or get_settings()

    node = NodeRail(
        rpc_url=settings.dogecoin_rpc_url,
        rpc_user=settings.dogecoin_user,
        rpc_password=settings.dogecoin_password,
        network=settings.dogecoin_network,
        min_confirmations=settings.min_confirmations,
        enabled=settings.dogecoin_node_enabled,
        timeout=settings.rail_timeout,
        transport=transport,
    )

    explorer = ExplorerRail(
        api_url=settings.dogechain_api_url,
        hot_wallet_address=settings.dogechain_hot_wallet_address,
        raw_tx_builder=raw_tx_builder,
        min_confirmations=settings.min_confirmations,
        enabled=settings.dogechain_enabled,
        timeout=settings.rail_timeout,
        transport=transport,
    )

    token = TokenRail(
        rpc_url=settings.bsc_rpc_url,
        contract_address=settings.wdoge_contract,
        private_key=settings.wallet_private_key,
        chain_id=settings.bsc_chain_id,
        decimals=settings.wdoge_decimals,
        gas_limit=settings.gas_limit,
        gas_price_gwei=settings.gas_price_gwei,
        min_confirmations=settings.token_min_confirmations,
        enabled=settings.wrapped_doge_enabled,
        timeout=settings.rail_timeout,
        transport=transport,
    )

    return [node, explorer, token]


def build_selector(settings: Optional[Settings] = None, **kwargs) -> RailSelector:
    return RailSelector(build_rails(settings, **kwargs))
