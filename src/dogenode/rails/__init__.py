"""Settlement rails: node RPC, explorer API and wrapped token contract."""

from dogenode.rails.base import RailReceipt, SettlementRail
from dogenode.rails.factory import build_rails, build_selector
from dogenode.rails.selector import RailSelector

__all__ = [
    "RailReceipt",
    "SettlementRail",
    "RailSelector",
    "build_rails",
    "build_selector",
]
