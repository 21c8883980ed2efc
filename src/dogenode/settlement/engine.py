"""Withdrawal settlement engine.

Withdrawal flow:
1. Validate amount and destination, pre-select a rail
2. Compute the service fee (net = gross - fee)
3. Reserve funds and create the pending record in one transaction
4. Dispatch: select rail -> processing -> send, retrying transient failures
   with exponential backoff tracked on the record itself
5. Hand over to the confirmation monitor (record stays processing with a hash)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import AsyncIterator, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dogenode.config import Settings, get_settings
from dogenode.errors import (
    IllegalTransition,
    NoRailAvailable,
    RailUnavailable,
    RecordNotFound,
    SettlementError,
    ValidationError,
    is_transient,
)
from dogenode.ledger.database import get_db
from dogenode.ledger.models import (
    ZERO,
    RailName,
    SettlementKind,
    SettlementRecord,
    SettlementStatus,
    quantize,
    utcnow,
)
from dogenode.ledger.repository import LedgerStore
from dogenode.ledger.transactions import TransactionStore
from dogenode.rails.base import RailReceipt, SettlementRail
from dogenode.rails.selector import RailSelector
from dogenode.utils.locks import account_lock

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass
class FeeEstimate:
    """Service fee for a withdrawal amount."""
    amount: Decimal
    fee: Decimal
    net_amount: Decimal
    rail: Optional[str] = None
    min_confirmations: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "amount": str(self.amount),
            "fee": str(self.fee),
            "net_amount": str(self.net_amount),
            "rail": self.rail,
            "min_confirmations": self.min_confirmations,
        }


def parse_amount(amount) -> Decimal:
    """Parse and quantize a user supplied amount."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount}")
    return quantize(value)


class SettlementEngine:
    """Turns withdrawal requests into broadcast payments."""

    def __init__(
        self,
        selector: RailSelector,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.selector = selector
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.sleep = sleep

    @asynccontextmanager
    async def _locked(
        self, user_id: str, operation: str
    ) -> AsyncIterator[tuple[LedgerStore, TransactionStore]]:
        """Account lock plus one database transaction."""
        async with account_lock(user_id, operation=operation):
            async with get_db(self.session_factory) as session:
                yield (
                    LedgerStore(session, self.settings.withdrawal_daily_limit),
                    TransactionStore(session),
                )

    # Fees
    def _validate_amount(self, amount: Decimal) -> None:
        low = self.settings.withdrawal_min_amount
        high = self.settings.withdrawal_max_amount
        if amount < low or amount > high:
            raise ValidationError(f"Amount must be between {low} and {high} DOGE, got {amount}")

    def compute_fee(self, amount: Decimal) -> tuple[Decimal, Decimal]:
        """Return (fee, net_amount) for a gross amount."""
        fee = quantize(
            self.settings.withdrawal_fee_fixed
            + amount * self.settings.withdrawal_fee_percent / Decimal(100)
        )
        return fee, amount - fee

    def estimate_fee(self, amount, rail: Optional[str] = None) -> FeeEstimate:
        """Estimate the fee for an amount, optionally for a specific rail."""
        amount = parse_amount(amount)
        self._validate_amount(amount)

        min_confirmations = None
        if rail is not None:
            try:
                rail_obj = self.selector.get(RailName(rail))
            except ValueError:
                raise ValidationError(f"Unknown rail: {rail}")
            if rail_obj is None or rail_obj.name == RailName.MANUAL:
                raise ValidationError(f"Rail not configured: {rail}")
            min_confirmations = rail_obj.min_confirmations

        fee, net_amount = self.compute_fee(amount)
        return FeeEstimate(
            amount=amount,
            fee=fee,
            net_amount=net_amount,
            rail=rail,
            min_confirmations=min_confirmations,
        )

    # Requests
    async def request_withdrawal(
        self, user_id: str, to_address: str, amount
    ) -> SettlementRecord:
        """Create and dispatch a withdrawal.

        Returns the record, normally ``processing`` with a transaction hash.

        Raises:
            ValidationError, NoRailAvailable and ledger errors before anything
            is reserved; dispatch errors after the record failed and its funds
            were released (``record_id`` is set on those)
        """
        amount = parse_amount(amount)
        self._validate_amount(amount)

        if not to_address or not await self.selector.is_valid_destination(to_address):
            raise ValidationError(f"Invalid destination address: {to_address}")

        # Fail fast before reserving when nothing can pay this destination
        rail = self.selector.select(to_address)

        fee, net_amount = self.compute_fee(amount)
        if net_amount <= ZERO:
            raise ValidationError(f"Amount {amount} does not cover the {fee} DOGE fee")

        async with self._locked(user_id, "withdrawal_request") as (ledger, records):
            account = await ledger.reserve(user_id, amount)
            record = await records.create(
                user_id=user_id,
                kind=SettlementKind.WITHDRAWAL,
                rail=rail.name,
                gross_amount=amount,
                fee=fee,
                to_address=to_address,
                description=f"Withdrawal of {net_amount} DOGE to {to_address}",
                funds_reserved=True,
                reserved_on=account.last_reset,
            )

        logger.info(
            f"Withdrawal {record.id} created: {amount} DOGE (fee {fee}) for {user_id} to {to_address}"
        )
        return await self._dispatch(record.id)

    async def retry_withdrawal(self, record_id: str) -> SettlementRecord:
        """Re-reserve funds for a failed withdrawal and dispatch it again."""
        record = await self.get_withdrawal(record_id)

        async with self._locked(record.user_id, "withdrawal_retry") as (ledger, records):
            record = await records.get_or_raise(record_id)
            status = SettlementStatus(record.status)
            if status != SettlementStatus.FAILED:
                raise IllegalTransition(
                    f"Only failed withdrawals can be retried, {record_id} is {status.value}",
                    record_id=record_id,
                )

            account = await ledger.reserve(record.user_id, record.gross_amount)
            await records.transition(record, SettlementStatus.PENDING)
            record.funds_reserved = True
            record.reserved_on = account.last_reset

            # A dropped transaction is replaced by a new one
            if record.tx_hash:
                record.tx_hash = None
                record.explorer_url = None
                record.block_height = None
                record.confirmations = 0

        logger.info(f"Withdrawal {record_id} retried (retries so far: {record.retries})")
        return await self._dispatch(record_id)

    async def cancel_withdrawal(self, record_id: str) -> SettlementRecord:
        """Cancel a withdrawal that has not been dispatched yet."""
        record = await self.get_withdrawal(record_id)

        async with self._locked(record.user_id, "withdrawal_cancel") as (ledger, records):
            record = await records.get_or_raise(record_id)
            await records.transition(record, SettlementStatus.CANCELLED)
            await ledger.release_for(record)

        logger.info(f"Withdrawal {record_id} cancelled")
        return record

    async def get_withdrawal(self, record_id: str) -> SettlementRecord:
        async with get_db(self.session_factory) as session:
            record = await TransactionStore(session).get_or_raise(record_id)

        if record.kind != SettlementKind.WITHDRAWAL.value:
            raise RecordNotFound(f"Withdrawal {record_id} not found", record_id=record_id)
        return record

    async def resume_interrupted(self) -> int:
        """Re-dispatch withdrawals whose dispatch a restart cut short.

        A processing record without a hash may or may not have been sent, so it
        is marked unverified and goes through the broadcast lookup first.

        Returns:
            Number of records resumed
        """
        async with get_db(self.session_factory) as session:
            interrupted = await TransactionStore(session).list_interrupted()

        resumed = 0
        for record in interrupted:
            if SettlementStatus(record.status) == SettlementStatus.PROCESSING:
                async with self._locked(record.user_id, "withdrawal_resume") as (_, records):
                    current = await records.get_or_raise(record.id)
                    current.unverified_attempt = True

            logger.info(f"Resuming interrupted withdrawal {record.id}")
            try:
                await self._dispatch(record.id)
            except SettlementError as e:
                logger.warning(f"Resumed withdrawal {record.id} failed: {e.kind.value}: {e}")
            resumed += 1

        return resumed

    # Dispatch
    def backoff_delay(self, retries: int) -> float:
        """Delay before the next attempt after ``retries`` failed ones."""
        delay = self.settings.retry_base_delay * (2 ** max(retries - 1, 0))
        return min(delay, self.settings.retry_max_delay)

    async def _dispatch(self, record_id: str) -> SettlementRecord:
        while True:
            record = await self.get_withdrawal(record_id)
            status = SettlementStatus(record.status)

            if status not in (SettlementStatus.PENDING, SettlementStatus.PROCESSING) or record.tx_hash:
                return record

            if record.unverified_attempt:
                try:
                    receipt = await self._lookup_previous_attempt(record)
                except Exception as e:
                    error = SettlementError.wrap(e)
                    logger.warning(f"Cannot verify earlier send of {record_id}: {error}")
                    await self._attempt_failed(record, error)
                    continue

                if receipt is not None:
                    return await self._store_receipt(record_id, RailName(record.rail), receipt)

                async with self._locked(record.user_id, "withdrawal_verify") as (_, records):
                    current = await records.get_or_raise(record_id)
                    current.unverified_attempt = False
                    current.attempt_tx_hash = None

            try:
                rail = self.selector.select(record.to_address)
            except NoRailAvailable as e:
                raise await self._fail(record_id, e)

            if not await self._mark_processing(record_id, rail):
                return await self.get_withdrawal(record_id)

            try:
                receipt = await rail.send(record.to_address, record.net_amount, reference=record.id)
            except Exception as e:
                error = SettlementError.wrap(e)
                logger.warning(
                    f"Send of {record_id} via {rail.name.value} failed: {error.kind.value}: {error}"
                )
                if not is_transient(error):
                    raise await self._fail(record_id, error)
                await self._attempt_failed(record, error, outcome_unknown=_outcome_unknown(error))
                continue

            return await self._store_receipt(record_id, rail.name, receipt)

    async def _lookup_previous_attempt(self, record: SettlementRecord) -> Optional[RailReceipt]:
        rail = self.selector.get(RailName(record.rail))
        if rail is None:
            raise RailUnavailable(f"Rail {record.rail} that made the last attempt is gone")
        return await rail.lookup_broadcast(record.id, record.attempt_tx_hash)

    async def _mark_processing(self, record_id: str, rail: SettlementRail) -> bool:
        """Move to processing on the chosen rail; False if the record left dispatch."""
        record = await self.get_withdrawal(record_id)
        async with self._locked(record.user_id, "withdrawal_dispatch") as (_, records):
            record = await records.get_or_raise(record_id)
            status = SettlementStatus(record.status)

            if status == SettlementStatus.PENDING:
                await records.transition(record, SettlementStatus.PROCESSING)
            elif status != SettlementStatus.PROCESSING:
                logger.info(f"Withdrawal {record_id} is {status.value}, not sending")
                return False

            record.rail = rail.name.value
        return True

    async def _attempt_failed(
        self,
        record: SettlementRecord,
        error: SettlementError,
        outcome_unknown: bool = False,
    ) -> None:
        """Count a failed attempt, then back off or give up at the ceiling."""
        async with self._locked(record.user_id, "withdrawal_attempt") as (_, records):
            current = await records.get_or_raise(record.id)
            current.retries += 1
            current.last_retry_at = utcnow()
            records.record_error(current, error)
            if outcome_unknown:
                current.unverified_attempt = True
                current.attempt_tx_hash = getattr(error, "tx_hash", None)
            retries = current.retries

        if retries >= self.settings.withdrawal_max_retries:
            logger.error(f"Withdrawal {record.id} gave up after {retries} attempts")
            raise await self._fail(record.id, error)

        delay = self.backoff_delay(retries)
        logger.info(f"Retrying withdrawal {record.id} in {delay:.1f}s (attempt {retries + 1})")
        await self.sleep(delay)

    async def _fail(self, record_id: str, error: SettlementError) -> SettlementError:
        """Fail the record and release its funds; returns the error to raise."""
        record = await self.get_withdrawal(record_id)
        async with self._locked(record.user_id, "withdrawal_fail") as (ledger, records):
            record = await records.get_or_raise(record_id)
            await records.transition(record, SettlementStatus.FAILED, error=error)
            await ledger.release_for(record)
            if record.unverified_attempt:
                # Funds went back although an earlier send may have gone out
                record.needs_review = True

        logger.error(f"Withdrawal {record_id} failed: {error.kind.value}: {error.message}")
        error.record_id = record_id
        return error

    async def _store_receipt(
        self, record_id: str, rail_name: RailName, receipt: RailReceipt
    ) -> SettlementRecord:
        record = await self.get_withdrawal(record_id)
        async with self._locked(record.user_id, "withdrawal_broadcast") as (_, records):
            record = await records.get_or_raise(record_id)
            if SettlementStatus(record.status) == SettlementStatus.PENDING:
                await records.transition(record, SettlementStatus.PROCESSING)

            record.rail = rail_name.value
            record.tx_hash = receipt.tx_hash
            record.explorer_url = receipt.explorer_url
            record.network = receipt.network
            record.unverified_attempt = False
            record.attempt_tx_hash = None
            record.error_kind = None
            record.error_message = None

        logger.info(f"Withdrawal {record_id} broadcast via {rail_name.value}: {receipt.tx_hash}")
        return record


def _outcome_unknown(error: SettlementError) -> bool:
    """Whether the failed send may still have reached the network."""
    return isinstance(error, RailUnavailable) or type(error) is SettlementError
