"""Ledger module for account balances and settlement records."""

from dogenode.ledger.database import get_db, init_db
from dogenode.ledger.models import (
    Account,
    AccountStatus,
    RailName,
    SettlementKind,
    SettlementRecord,
    SettlementStatus,
)
from dogenode.ledger.repository import LedgerStore
from dogenode.ledger.transactions import TransactionStore

__all__ = [
    # Models
    "Account",
    "SettlementRecord",
    # Enums
    "AccountStatus",
    "RailName",
    "SettlementKind",
    "SettlementStatus",
    # Database
    "get_db",
    "init_db",
    "LedgerStore",
    "TransactionStore",
]
