"""Wallet API endpoints: balances, address info and earnings credit."""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dogenode.api.dependencies import get_app_settings, get_selector, get_session_factory
from dogenode.api.schemas import record_data, success
from dogenode.config import Settings
from dogenode.errors import AccountNotFound, ValidationError
from dogenode.ledger.database import get_db
from dogenode.ledger.models import ZERO, Account, SettlementKind, utctoday
from dogenode.ledger.repository import LedgerStore
from dogenode.ledger.transactions import TransactionStore
from dogenode.rails.selector import RailSelector
from dogenode.utils.locks import account_lock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/wallet", tags=["Wallet"])


class EarningsBody(BaseModel):
    """Credit request."""
    user_id: str = Field(min_length=1, max_length=64)
    amount: Decimal = Field(gt=0)
    kind: SettlementKind = SettlementKind.EARNING
    description: Optional[str] = None


def balance_data(account: Account) -> dict:
    # Daily counters read as zero once the day rolled over, before the lazy reset runs
    fresh_day = account.last_reset != utctoday()
    return {
        "user_id": account.user_id,
        "status": account.status,
        "available": str(account.available),
        "pending": str(account.pending),
        "total_earned": str(account.total_earned),
        "total_withdrawn": str(account.total_withdrawn),
        "today_earnings": str(ZERO if fresh_day else account.today_earnings),
        "daily_withdrawal_limit": str(account.daily_withdrawal_limit),
        "daily_withdrawn": str(ZERO if fresh_day else account.daily_withdrawn),
        "withdrawal_count": account.withdrawal_count,
    }


@router.get("/balance/{user_id}")
async def get_balance(
    user_id: str,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    """Get an account's balances and daily limit usage."""
    async with get_db(session_factory) as session:
        account = await LedgerStore(session, settings.withdrawal_daily_limit).get_account(user_id)

    if account is None:
        raise AccountNotFound(f"Account {user_id} not found")

    return success(balance_data(account))


@router.get("/info/{address}")
async def get_address_info(
    address: str,
    selector: RailSelector = Depends(get_selector),
) -> dict:
    """On-chain balance of an address, read through the rail that would pay it."""
    if not await selector.is_valid_destination(address):
        raise ValidationError(f"Invalid address: {address}")

    rail = selector.select(address)
    balance = await rail.get_balance(address)

    return success({
        "address": address,
        "rail": rail.name.value,
        "balance": str(balance),
    })


@router.post("/earnings/add")
async def add_earnings(
    body: EarningsBody,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    """Credit earnings and record them as a completed settlement record."""
    if body.kind == SettlementKind.WITHDRAWAL:
        raise ValidationError("Withdrawals cannot be credited")

    async with account_lock(body.user_id, operation="credit"):
        async with get_db(session_factory) as session:
            ledger = LedgerStore(session, settings.withdrawal_daily_limit)
            account = await ledger.credit(body.user_id, body.amount, body.kind)
            record = await TransactionStore(session).create_credit_record(
                user_id=body.user_id,
                amount=body.amount,
                kind=body.kind,
                description=body.description or f"{body.kind.value.capitalize()} credit",
            )

    logger.info(f"Credited {body.amount} ({body.kind.value}) to {body.user_id}")
    return success({
        "balance": balance_data(account),
        "record": record_data(record),
    })
