#!/usr/bin/env python3
"""Credit an account directly in the database.

Usage:
    python scripts/credit_balance.py <user_id> <amount> [--kind bonus] [--description "..."]
"""

import argparse
import asyncio
import sys
from decimal import Decimal, InvalidOperation

from dotenv import load_dotenv
load_dotenv()

from dogenode.ledger.database import close_db, get_db, init_db
from dogenode.ledger.models import SettlementKind
from dogenode.ledger.repository import LedgerStore
from dogenode.ledger.transactions import TransactionStore
from dogenode.utils.locks import account_lock


async def credit_balance(
    user_id: str, amount: Decimal, kind: SettlementKind, description: str = None
) -> None:
    await init_db()

    async with account_lock(user_id, operation="manual_credit"):
        async with get_db() as session:
            account = await LedgerStore(session).credit(user_id, amount, kind)
            record = await TransactionStore(session).create_credit_record(
                user_id=user_id,
                amount=amount,
                kind=kind,
                description=description or f"Manual {kind.value} credit",
            )

    print(f"Credited {amount} DOGE ({kind.value}) to {user_id}")
    print(f"Record: {record.id}")
    print(f"New available balance: {account.available} DOGE")

    await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Credit DOGE to an account")
    parser.add_argument("user_id")
    parser.add_argument("amount")
    parser.add_argument(
        "--kind",
        default=SettlementKind.EARNING.value,
        choices=[k.value for k in SettlementKind if k != SettlementKind.WITHDRAWAL],
    )
    parser.add_argument("--description", default=None)
    args = parser.parse_args()

    try:
        amount = Decimal(args.amount)
    except InvalidOperation:
        print(f"Invalid amount: {args.amount}")
        sys.exit(1)

    asyncio.run(credit_balance(args.user_id, amount, SettlementKind(args.kind), args.description))


if __name__ == "__main__":
    main()
