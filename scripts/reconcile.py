#!/usr/bin/env python3
"""Ledger reconciliation script.

Checks that every account's pending balance equals the sum of the
reservations its settlement records still hold, and lists withdrawals
flagged for operator review.

Usage:
    python scripts/reconcile.py [--user USER_ID] [--json]
"""

import argparse
import asyncio
import json
import logging
from decimal import Decimal

from dotenv import load_dotenv
from sqlalchemy import func, select

from dogenode.ledger.database import close_db, get_db, init_db
from dogenode.ledger.models import Account, SettlementRecord
from dogenode.ledger.transactions import TransactionStore

load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def find_mismatches(user_id: str = None) -> list[dict]:
    """Accounts whose pending balance disagrees with held reservations."""
    async with get_db() as session:
        reserved_stmt = (
            select(SettlementRecord.user_id, func.sum(SettlementRecord.gross_amount))
            .where(SettlementRecord.funds_reserved.is_(True))
            .group_by(SettlementRecord.user_id)
        )
        reserved = {
            uid: Decimal(str(total or 0))
            for uid, total in (await session.execute(reserved_stmt)).all()
        }

        accounts_stmt = select(Account)
        if user_id:
            accounts_stmt = accounts_stmt.where(Account.user_id == user_id)
        accounts = (await session.execute(accounts_stmt)).scalars().all()

    mismatches = []
    for account in accounts:
        held = reserved.get(account.user_id, Decimal("0"))
        if account.pending != held:
            mismatches.append({
                "user_id": account.user_id,
                "pending": str(account.pending),
                "reserved_by_records": str(held),
                "difference": str(account.pending - held),
            })
            logger.warning(
                f"{account.user_id}: pending {account.pending} != reserved {held}"
            )
    return mismatches


async def find_review_items() -> list[dict]:
    async with get_db() as session:
        records = await TransactionStore(session).list_needing_review()

    return [
        {
            "id": r.id,
            "user_id": r.user_id,
            "status": r.status,
            "tx_hash": r.tx_hash,
            "attempt_tx_hash": r.attempt_tx_hash,
            "confirmations": r.confirmations,
            "error": r.error,
        }
        for r in records
    ]


async def main() -> None:
    parser = argparse.ArgumentParser(description="Reconcile ledger and settlement records")
    parser.add_argument("--user", help="Only check one account")
    parser.add_argument("--json", action="store_true", help="Print a JSON report")
    args = parser.parse_args()

    await init_db()
    mismatches = await find_mismatches(args.user)
    review = await find_review_items()
    await close_db()

    if args.json:
        print(json.dumps({"mismatches": mismatches, "needs_review": review}, indent=2))
        return

    print(f"Accounts with mismatched pending balance: {len(mismatches)}")
    for item in mismatches:
        print(f"  {item['user_id']}: pending {item['pending']}, reserved {item['reserved_by_records']}")

    print(f"Withdrawals needing review: {len(review)}")
    for item in review:
        print(f"  {item['id']} ({item['status']}) tx={item['tx_hash'] or item['attempt_tx_hash']}")


if __name__ == "__main__":
    asyncio.run(main())
