"""Confirmation monitor.

Polls the rails for dispatched withdrawals and accepts pushed confirmation
updates. Both paths end in ``apply_confirmation``.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dogenode.config import Settings, get_settings
from dogenode.errors import (
    RecordNotFound,
    SettlementError,
    TransactionDropped,
    ValidationError,
)
from dogenode.ledger.database import get_db
from dogenode.ledger.models import RailName, SettlementRecord, SettlementStatus
from dogenode.ledger.repository import LedgerStore
from dogenode.ledger.transactions import TransactionStore
from dogenode.rails.selector import RailSelector
from dogenode.settlement.loops import PeriodicTask
from dogenode.utils.locks import account_lock

logger = logging.getLogger(__name__)


class ConfirmationMonitor(PeriodicTask):
    """Tracks processing withdrawals until they complete or fail."""

    name = "confirmation-monitor"

    def __init__(
        self,
        selector: RailSelector,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        super().__init__(self.settings.monitor_interval)
        self.selector = selector
        self.session_factory = session_factory

    def min_confirmations_for(self, record: SettlementRecord) -> int:
        rail = self.selector.get(RailName(record.rail))
        if rail is None:
            return self.settings.min_confirmations
        return rail.min_confirmations

    async def run_once(self) -> int:
        """Poll one batch of tracked records."""
        async with get_db(self.session_factory) as session:
            tracked = await TransactionStore(session).list_tracked(
                limit=self.settings.monitor_batch_size
            )

        for record in tracked:
            try:
                await self.poll(record)
            except Exception as e:
                logger.error(f"Error polling {record.id}: {e}")

        return len(tracked)

    async def poll(self, record: SettlementRecord) -> SettlementRecord:
        """Ask the record's rail for its confirmation count and inclusion block."""
        rail = self.selector.get(RailName(record.rail))
        confirmations = 0
        dropped = False
        block_height = None

        if rail is None:
            logger.warning(f"No rail {record.rail} to poll {record.id}")
        else:
            try:
                confirmations = await rail.get_confirmations(record.tx_hash)
            except TransactionDropped:
                dropped = True
            except SettlementError as e:
                logger.warning(f"Confirmation poll for {record.id} failed: {e}")

            if confirmations > 0 and record.block_height is None:
                try:
                    block_height = await rail.get_block_height(record.tx_hash)
                except SettlementError as e:
                    logger.warning(f"Block height lookup for {record.id} failed: {e}")

        return await self.apply_confirmation(
            record.id,
            confirmations,
            dropped=dropped,
            count_poll=True,
            block_height=block_height,
        )

    async def apply_confirmation(
        self,
        record_id: str,
        confirmations: int,
        dropped: bool = False,
        count_poll: bool = False,
        block_height: Optional[int] = None,
    ) -> SettlementRecord:
        """Single state transition for confirmation updates.

        Confirmations never go down. Reaching the rail's minimum completes the
        withdrawal and settles its reservation; a dropped transaction fails it
        and releases the funds. Updates for records no longer processing are
        ignored.
        """
        if confirmations < 0:
            raise ValidationError(f"Confirmations must be non-negative, got {confirmations}")

        async with get_db(self.session_factory) as session:
            record = await TransactionStore(session).get_or_raise(record_id)
        user_id = record.user_id

        async with account_lock(user_id, operation="confirmation_update"):
            async with get_db(self.session_factory) as session:
                records = TransactionStore(session)
                ledger = LedgerStore(session, self.settings.withdrawal_daily_limit)
                record = await records.get_or_raise(record_id)

                if SettlementStatus(record.status) != SettlementStatus.PROCESSING:
                    logger.debug(f"Ignoring confirmation update for {record_id} ({record.status})")
                    return record

                if dropped:
                    error = TransactionDropped(
                        f"Transaction {record.tx_hash} was dropped by the network",
                        record_id=record_id,
                    )
                    await records.transition(record, SettlementStatus.FAILED, error=error)
                    await ledger.release_for(record)
                    logger.warning(f"Withdrawal {record_id} dropped, funds released")
                    return record

                record.confirmations = max(record.confirmations, confirmations)
                if block_height is not None:
                    record.block_height = block_height
                required = self.min_confirmations_for(record)

                if record.confirmations >= required:
                    await records.transition(record, SettlementStatus.COMPLETED)
                    await ledger.settle_for(record)
                    record.needs_review = False
                    logger.info(
                        f"Withdrawal {record_id} completed with {record.confirmations} confirmations"
                    )
                    return record

                if count_poll:
                    record.poll_attempts += 1
                    if (
                        record.poll_attempts >= self.settings.monitor_max_attempts
                        and not record.needs_review
                    ):
                        record.needs_review = True
                        logger.warning(
                            f"Withdrawal {record_id} still at {record.confirmations}/{required} "
                            f"confirmations after {record.poll_attempts} polls, needs review"
                        )

        return record

    async def handle_webhook(
        self, tx_hash: str, confirmations: int, block_height: Optional[int] = None
    ) -> SettlementRecord:
        """Apply a pushed ``{tx_hash, confirmations}`` update."""
        async with get_db(self.session_factory) as session:
            record = await TransactionStore(session).get_by_tx_hash(tx_hash)

        if record is None:
            raise RecordNotFound(f"No settlement record for transaction {tx_hash}")

        return await self.apply_confirmation(record.id, confirmations, block_height=block_height)
