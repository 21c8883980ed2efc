"""Withdrawal settlement: engine, confirmation monitor and limit reset."""

from dogenode.settlement.engine import FeeEstimate, SettlementEngine
from dogenode.settlement.monitor import ConfirmationMonitor
from dogenode.settlement.scheduler import LimitResetScheduler

__all__ = [
    "ConfirmationMonitor",
    "FeeEstimate",
    "LimitResetScheduler",
    "SettlementEngine",
]
