"""SQLAlchemy models for accounts and settlement records."""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

AMOUNT_QUANTUM = Decimal("0.00000001")
ZERO = Decimal("0")


def quantize(amount) -> Decimal:
    """Round an amount to 8 decimal places."""
    return Decimal(str(amount)).quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utctoday() -> date:
    return utcnow().date()


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class AccountStatus(str, Enum):
    """Status of an account."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"
    PENDING = "pending"


class SettlementKind(str, Enum):
    """What a settlement record moves funds for."""

    EARNING = "earning"
    WITHDRAWAL = "withdrawal"
    REFERRAL = "referral"
    BONUS = "bonus"
    REFUND = "refund"


class RailName(str, Enum):
    """Payment rail a record is routed through."""

    NODE = "node"
    EXPLORER = "explorer-api"
    TOKEN = "token-contract"
    MANUAL = "manual"


class SettlementStatus(str, Enum):
    """Status of a settlement record."""

    PENDING = "pending"          # Created, funds reserved, not yet dispatched
    PROCESSING = "processing"    # Dispatched to a rail, waiting for confirmations
    COMPLETED = "completed"      # Confirmed on chain
    FAILED = "failed"            # Failed, funds released (retry allowed)
    CANCELLED = "cancelled"      # Cancelled before dispatch


class Account(Base):
    """Per-user balance and withdrawal limits."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), default=AccountStatus.ACTIVE.value, nullable=False
    )

    # Balances
    available: Mapped[Decimal] = mapped_column(Numeric(20, 8), default=ZERO, nullable=False)
    pending: Mapped[Decimal] = mapped_column(Numeric(20, 8), default=ZERO, nullable=False)
    total_earned: Mapped[Decimal] = mapped_column(Numeric(20, 8), default=ZERO, nullable=False)
    total_withdrawn: Mapped[Decimal] = mapped_column(Numeric(20, 8), default=ZERO, nullable=False)
    today_earnings: Mapped[Decimal] = mapped_column(Numeric(20, 8), default=ZERO, nullable=False)

    # Limits
    daily_withdrawal_limit: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    daily_withdrawn: Mapped[Decimal] = mapped_column(Numeric(20, 8), default=ZERO, nullable=False)
    last_reset: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    withdrawal_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


@dataclass
class ChainInfo:
    """On-chain view of a settlement record."""

    tx_hash: Optional[str]
    block_height: Optional[int]
    confirmations: int
    explorer_url: Optional[str]
    network: Optional[str]


class SettlementRecord(Base):
    """Durable audit record of one funds movement.

    Records are never deleted; failed and cancelled ones stay for audit.
    """

    __tablename__ = "settlement_records"
    __table_args__ = (
        Index("ix_settlement_records_user_created", "user_id", "created_at"),
        Index("ix_settlement_records_status_created", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.user_id"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    rail: Mapped[str] = mapped_column(String(20), nullable=False)

    gross_amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    fee: Mapped[Decimal] = mapped_column(Numeric(20, 8), default=ZERO, nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)  # gross - fee
    from_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    to_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=SettlementStatus.PENDING.value, nullable=False
    )

    # Blockchain data
    tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    block_height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    confirmations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    explorer_url: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    network: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Reservation and dispatch bookkeeping
    funds_reserved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # UTC day whose daily_withdrawn counter holds the reservation
    reserved_on: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    unverified_attempt: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attempt_tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Retries and errors
    retries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_kind: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Confirmation monitoring
    poll_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def chain(self) -> ChainInfo:
        return ChainInfo(
            tx_hash=self.tx_hash,
            block_height=self.block_height,
            confirmations=self.confirmations,
            explorer_url=self.explorer_url,
            network=self.network,
        )

    @property
    def error(self) -> Optional[dict]:
        if not self.error_kind:
            return None
        return {"kind": self.error_kind, "message": self.error_message}
