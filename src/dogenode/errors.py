"""Settlement error taxonomy.

Every error carries a machine-readable ``kind`` that is preserved from the
rail or ledger all the way to the API payload.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Machine-readable error kinds."""

    VALIDATION_ERROR = "ValidationError"
    ACCOUNT_NOT_FOUND = "AccountNotFound"
    ACCOUNT_INACTIVE = "AccountInactive"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    DAILY_LIMIT_EXCEEDED = "DailyLimitExceeded"
    RAIL_UNAVAILABLE = "RailUnavailable"
    INSUFFICIENT_RAIL_LIQUIDITY = "InsufficientRailLiquidity"
    DROPPED_BY_NETWORK = "DroppedByNetwork"
    NO_RAIL_AVAILABLE = "NoRailAvailable"
    RECORD_NOT_FOUND = "RecordNotFound"
    ILLEGAL_TRANSITION = "IllegalTransition"
    UNAUTHORIZED = "Unauthorized"
    SETTLEMENT_ERROR = "SettlementError"


class SettlementError(Exception):
    """Base class for all settlement errors.

    Unknown downstream failures are wrapped in this class directly so the
    original message survives for diagnostics.
    """

    kind: ErrorKind = ErrorKind.SETTLEMENT_ERROR

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.record_id = record_id

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}

    @classmethod
    def wrap(cls, error: Exception) -> "SettlementError":
        """Map any exception onto the taxonomy, keeping its message."""
        if isinstance(error, SettlementError):
            return error
        return cls(f"{type(error).__name__}: {error}")


class ValidationError(SettlementError):
    """Bad amount or destination. Never retried."""

    kind = ErrorKind.VALIDATION_ERROR


class InvalidAddress(ValidationError):
    """Destination rejected by the rail."""


class AccountNotFound(SettlementError):
    kind = ErrorKind.ACCOUNT_NOT_FOUND


class AccountInactive(SettlementError):
    kind = ErrorKind.ACCOUNT_INACTIVE


class InsufficientFunds(SettlementError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class DailyLimitExceeded(SettlementError):
    kind = ErrorKind.DAILY_LIMIT_EXCEEDED


class RailUnavailable(SettlementError):
    """Network failure or timeout talking to a rail.

    A timeout is not proof that nothing was broadcast. When the rail computed
    the transaction hash before broadcasting, it is attached as ``tx_hash``.
    """

    kind = ErrorKind.RAIL_UNAVAILABLE

    def __init__(
        self,
        message: str,
        record_id: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ):
        super().__init__(message, record_id)
        self.tx_hash = tx_hash


class InsufficientRailLiquidity(SettlementError):
    kind = ErrorKind.INSUFFICIENT_RAIL_LIQUIDITY


class TransactionDropped(SettlementError):
    """The network reports the transaction as conflicted, reverted or dropped."""

    kind = ErrorKind.DROPPED_BY_NETWORK


class NoRailAvailable(SettlementError):
    kind = ErrorKind.NO_RAIL_AVAILABLE


class RecordNotFound(SettlementError):
    kind = ErrorKind.RECORD_NOT_FOUND


class IllegalTransition(SettlementError):
    kind = ErrorKind.ILLEGAL_TRANSITION


class Unauthorized(SettlementError):
    """Webhook body without a valid signature."""

    kind = ErrorKind.UNAUTHORIZED


TRANSIENT_KINDS = frozenset({
    ErrorKind.RAIL_UNAVAILABLE,
    ErrorKind.INSUFFICIENT_RAIL_LIQUIDITY,
    ErrorKind.SETTLEMENT_ERROR,
})


def is_transient(error: SettlementError) -> bool:
    """Whether a failed send may be retried with backoff."""
    return error.kind in TRANSIENT_KINDS
