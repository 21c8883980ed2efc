"""Settlement record persistence and the record status state machine."""

import logging
import secrets
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dogenode.errors import IllegalTransition, RecordNotFound, SettlementError
from dogenode.ledger.models import (
    ZERO,
    RailName,
    SettlementKind,
    SettlementRecord,
    SettlementStatus,
    quantize,
    utcnow,
)

logger = logging.getLogger(__name__)

# Allowed status edges; anything else raises IllegalTransition
ALLOWED_TRANSITIONS: dict[SettlementStatus, frozenset[SettlementStatus]] = {
    SettlementStatus.PENDING: frozenset({
        SettlementStatus.PROCESSING,
        SettlementStatus.FAILED,
        SettlementStatus.CANCELLED,
    }),
    SettlementStatus.PROCESSING: frozenset({
        SettlementStatus.COMPLETED,
        SettlementStatus.FAILED,
    }),
    SettlementStatus.FAILED: frozenset({SettlementStatus.PENDING}),
    SettlementStatus.COMPLETED: frozenset(),
    SettlementStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({SettlementStatus.COMPLETED, SettlementStatus.CANCELLED})


def generate_record_id(kind: SettlementKind) -> str:
    """Generate a record id such as ``withdrawal_9f2c...``."""
    return f"{kind.value}_{secrets.token_hex(12)}"


def can_transition(current: SettlementStatus, target: SettlementStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[SettlementStatus(current)]


class TransactionStore:
    """Repository for settlement records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        user_id: str,
        kind: SettlementKind,
        rail: RailName,
        gross_amount: Decimal,
        fee: Decimal = ZERO,
        to_address: Optional[str] = None,
        from_address: Optional[str] = None,
        description: Optional[str] = None,
        status: SettlementStatus = SettlementStatus.PENDING,
        funds_reserved: bool = False,
        reserved_on: Optional[date] = None,
    ) -> SettlementRecord:
        """Create a new settlement record."""
        gross_amount = quantize(gross_amount)
        fee = quantize(fee)

        record = SettlementRecord(
            id=generate_record_id(kind),
            user_id=user_id,
            kind=kind.value,
            rail=rail.value,
            gross_amount=gross_amount,
            fee=fee,
            net_amount=gross_amount - fee,
            to_address=to_address,
            from_address=from_address,
            description=description,
            status=status.value,
            confirmations=0,
            retries=0,
            poll_attempts=0,
            funds_reserved=funds_reserved,
            reserved_on=reserved_on,
            unverified_attempt=False,
            needs_review=False,
            created_at=utcnow(),
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def create_credit_record(
        self,
        user_id: str,
        amount: Decimal,
        kind: SettlementKind = SettlementKind.EARNING,
        description: Optional[str] = None,
    ) -> SettlementRecord:
        """Record an earning, referral, bonus or refund; these complete immediately."""
        if kind == SettlementKind.WITHDRAWAL:
            raise SettlementError("Withdrawals cannot be recorded as credits")

        record = await self.create(
            user_id=user_id,
            kind=kind,
            rail=RailName.MANUAL,
            gross_amount=amount,
            description=description,
            status=SettlementStatus.COMPLETED,
        )
        now = utcnow()
        record.processed_at = now
        record.completed_at = now
        await self.session.flush()
        return record

    async def get(self, record_id: str) -> Optional[SettlementRecord]:
        """Get a record by id."""
        stmt = select(SettlementRecord).where(SettlementRecord.id == record_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_raise(self, record_id: str) -> SettlementRecord:
        record = await self.get(record_id)
        if record is None:
            raise RecordNotFound(f"Settlement record {record_id} not found", record_id=record_id)
        return record

    async def get_by_tx_hash(self, tx_hash: str) -> Optional[SettlementRecord]:
        stmt = (
            select(SettlementRecord)
            .where(SettlementRecord.tx_hash == tx_hash)
            .order_by(SettlementRecord.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def transition(
        self,
        record: SettlementRecord,
        target: SettlementStatus,
        error: Optional[SettlementError] = None,
    ) -> SettlementRecord:
        """Move a record to a new status, enforcing the allowed edges."""
        current = SettlementStatus(record.status)
        if not can_transition(current, target):
            raise IllegalTransition(
                f"Cannot move {record.id} from {current.value} to {target.value}",
                record_id=record.id,
            )

        record.status = target.value
        now = utcnow()

        if target == SettlementStatus.PROCESSING:
            record.processed_at = now
        elif target == SettlementStatus.COMPLETED:
            record.completed_at = now
        elif target == SettlementStatus.PENDING:
            record.error_kind = None
            record.error_message = None
            record.needs_review = False
            record.poll_attempts = 0

        if error is not None:
            self.record_error(record, error)

        await self.session.flush()
        logger.info(f"Record {record.id}: {current.value} -> {target.value}")
        return record

    @staticmethod
    def record_error(record: SettlementRecord, error: SettlementError) -> None:
        record.error_kind = error.kind.value
        record.error_message = error.message

    async def list_by_user(
        self,
        user_id: str,
        kind: Optional[SettlementKind] = None,
        status: Optional[SettlementStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[SettlementRecord], int]:
        """List a user's records, newest first.

        Returns:
            (records, total matching count)
        """
        conditions = [SettlementRecord.user_id == user_id]
        if kind is not None:
            conditions.append(SettlementRecord.kind == kind.value)
        if status is not None:
            conditions.append(SettlementRecord.status == status.value)

        stmt = (
            select(SettlementRecord)
            .where(*conditions)
            .order_by(SettlementRecord.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        records = list(result.scalars().all())

        count_stmt = select(func.count()).select_from(SettlementRecord).where(*conditions)
        total = (await self.session.execute(count_stmt)).scalar_one()

        return records, total

    async def list_tracked(self, limit: int = 50) -> list[SettlementRecord]:
        """Dispatched withdrawals waiting for confirmations, oldest first."""
        stmt = (
            select(SettlementRecord)
            .where(
                SettlementRecord.status == SettlementStatus.PROCESSING.value,
                SettlementRecord.tx_hash.is_not(None),
                SettlementRecord.needs_review.is_(False),
            )
            .order_by(SettlementRecord.processed_at.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_interrupted(self) -> list[SettlementRecord]:
        """Withdrawals whose dispatch never stored a transaction hash."""
        stmt = (
            select(SettlementRecord)
            .where(
                SettlementRecord.kind == SettlementKind.WITHDRAWAL.value,
                SettlementRecord.status.in_([
                    SettlementStatus.PENDING.value,
                    SettlementStatus.PROCESSING.value,
                ]),
                SettlementRecord.tx_hash.is_(None),
            )
            .order_by(SettlementRecord.created_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_needing_review(self) -> list[SettlementRecord]:
        stmt = (
            select(SettlementRecord)
            .where(SettlementRecord.needs_review.is_(True))
            .order_by(SettlementRecord.created_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
