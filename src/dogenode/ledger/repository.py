"""Account ledger: balances, reservations and daily withdrawal limits.

Callers hold ``account_lock(user_id)`` around every mutation; each method works
inside the caller's session so a reservation and its settlement record commit
together.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dogenode.config import get_settings
from dogenode.errors import (
    AccountInactive,
    AccountNotFound,
    DailyLimitExceeded,
    InsufficientFunds,
    ValidationError,
)
from dogenode.ledger.models import (
    ZERO,
    Account,
    AccountStatus,
    SettlementKind,
    SettlementRecord,
    quantize,
    utctoday,
)

logger = logging.getLogger(__name__)


class LedgerStore:
    """Repository for account balance operations."""

    def __init__(self, session: AsyncSession, default_daily_limit: Optional[Decimal] = None):
        self.session = session
        if default_daily_limit is None:
            default_daily_limit = get_settings().withdrawal_daily_limit
        self.default_daily_limit = quantize(default_daily_limit)

    # Account lookup
    async def get_account(self, user_id: str) -> Optional[Account]:
        """Get an account by user id."""
        stmt = select(Account).where(Account.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_account(self, user_id: str) -> Account:
        """Get existing account or create a new active one."""
        account = await self.get_account(user_id)

        if account is None:
            account = Account(
                user_id=user_id,
                status=AccountStatus.ACTIVE.value,
                available=ZERO,
                pending=ZERO,
                total_earned=ZERO,
                total_withdrawn=ZERO,
                today_earnings=ZERO,
                daily_withdrawal_limit=self.default_daily_limit,
                daily_withdrawn=ZERO,
                last_reset=utctoday(),
                withdrawal_count=0,
            )
            self.session.add(account)
            await self.session.flush()
            logger.info(f"Created account {user_id}")

        return account

    async def _load_for_update(self, user_id: str) -> Account:
        """Load an account row for mutation, locking it on PostgreSQL."""
        dialect = self.session.bind.dialect.name if self.session.bind else "sqlite"

        stmt = select(Account).where(Account.user_id == user_id)
        if dialect == "postgresql":
            stmt = stmt.with_for_update()

        result = await self.session.execute(stmt)
        account = result.scalar_one_or_none()

        if account is None:
            raise AccountNotFound(f"Account {user_id} not found")

        self._apply_lazy_reset(account)
        return account

    @staticmethod
    def _apply_lazy_reset(account: Account, today: Optional[date] = None) -> bool:
        """Zero the daily counters when the account is first touched on a new day."""
        today = today or utctoday()
        if account.last_reset == today:
            return False

        account.daily_withdrawn = ZERO
        account.today_earnings = ZERO
        account.last_reset = today
        return True

    # Balance mutations
    async def reserve(self, user_id: str, amount: Decimal) -> Account:
        """Debit available funds ahead of a withdrawal.

        Raises:
            AccountNotFound, AccountInactive, InsufficientFunds, DailyLimitExceeded
        """
        amount = quantize(amount)
        if amount <= ZERO:
            raise ValidationError(f"Reservation amount must be positive, got {amount}")

        account = await self._load_for_update(user_id)

        if account.status != AccountStatus.ACTIVE:
            raise AccountInactive(
                f"Account {user_id} is {AccountStatus(account.status).value}"
            )

        if account.available < amount:
            raise InsufficientFunds(
                f"Insufficient balance. Available: {account.available}, Required: {amount}"
            )

        if account.daily_withdrawn + amount > account.daily_withdrawal_limit:
            remaining = account.daily_withdrawal_limit - account.daily_withdrawn
            raise DailyLimitExceeded(
                f"Daily withdrawal limit exceeded. Remaining today: {remaining}"
            )

        account.available -= amount
        account.pending += amount
        account.daily_withdrawn += amount
        account.total_withdrawn += amount
        account.withdrawal_count += 1

        await self.session.flush()
        logger.info(f"Reserved {amount} for {user_id} (available {account.available})")
        return account

    async def credit(
        self,
        user_id: str,
        amount: Decimal,
        kind: SettlementKind = SettlementKind.EARNING,
    ) -> Account:
        """Add earned funds to an account, creating the account on first credit."""
        amount = quantize(amount)
        if amount <= ZERO:
            raise ValidationError(f"Credit amount must be positive, got {amount}")

        await self.get_or_create_account(user_id)
        account = await self._load_for_update(user_id)

        account.available += amount
        account.total_earned += amount
        account.today_earnings += amount

        await self.session.flush()
        logger.info(f"Credited {amount} ({kind.value}) to {user_id}")
        return account

    async def release(
        self, user_id: str, amount: Decimal, reserved_on: Optional[date] = None
    ) -> Account:
        """Reverse a reservation after a failed or cancelled withdrawal.

        The daily counter is only given back when the reservation was counted
        against the current day; a reset since then already cleared it.
        """
        amount = quantize(amount)
        account = await self._load_for_update(user_id)

        account.available += amount
        account.pending = max(account.pending - amount, ZERO)
        account.total_withdrawn = max(account.total_withdrawn - amount, ZERO)
        if reserved_on is None or reserved_on == account.last_reset:
            account.daily_withdrawn = max(account.daily_withdrawn - amount, ZERO)

        await self.session.flush()
        logger.info(f"Released {amount} back to {user_id}")
        return account

    async def settle(self, user_id: str, amount: Decimal) -> Account:
        """Finalize a confirmed withdrawal by clearing its pending amount."""
        amount = quantize(amount)
        account = await self._load_for_update(user_id)

        account.pending = max(account.pending - amount, ZERO)

        await self.session.flush()
        return account

    # Reservations held by settlement records
    async def release_for(self, record: SettlementRecord) -> bool:
        """Release a record's reservation if it still holds one."""
        if not record.funds_reserved:
            return False
        await self.release(record.user_id, record.gross_amount, record.reserved_on)
        record.funds_reserved = False
        await self.session.flush()
        return True

    async def settle_for(self, record: SettlementRecord) -> bool:
        """Settle a record's reservation once its payment confirmed."""
        if not record.funds_reserved:
            return False
        await self.settle(record.user_id, record.gross_amount)
        record.funds_reserved = False
        await self.session.flush()
        return True

    async def set_status(self, user_id: str, status: AccountStatus) -> Account:
        account = await self._load_for_update(user_id)
        account.status = status.value
        await self.session.flush()
        return account

    async def reset_daily_limits(self, today: Optional[date] = None) -> int:
        """Reset daily counters for every account not yet reset today.

        Returns:
            Number of accounts reset
        """
        today = today or utctoday()
        stmt = (
            update(Account)
            .where(or_(Account.last_reset.is_(None), Account.last_reset < today))
            .values(daily_withdrawn=ZERO, today_earnings=ZERO, last_reset=today)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0
