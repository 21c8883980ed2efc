"""Per-account locking for balance and record mutations.

Every reserve, credit, release and record status change for an account runs
under that account's lock, so mutations for one account never interleave while
different accounts proceed independently.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from dogenode.errors import SettlementError

logger = logging.getLogger(__name__)

# Lock registry: user_id -> asyncio.Lock
_account_locks: dict[str, asyncio.Lock] = {}


def get_account_lock(user_id: str) -> asyncio.Lock:
    """Get or create the lock for an account.

    The registry is only touched from the event loop thread without awaiting,
    so lookups and inserts cannot race.
    """
    lock = _account_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _account_locks[user_id] = lock
    return lock


class LockTimeoutError(SettlementError):
    """Raised when a lock cannot be acquired within the timeout period."""


@asynccontextmanager
async def account_lock(
    user_id: str,
    timeout: Optional[float] = 30.0,
    operation: str = "balance_operation",
):
    """Hold exclusive access to an account's balance and records.

    Args:
        user_id: Account key
        timeout: Maximum time to wait for the lock (None = wait forever)
        operation: Description for logging

    Example:
        async with account_lock(user_id, operation="reserve"):
            async with get_db() as session:
                await LedgerStore(session).reserve(user_id, amount)
    """
    lock = get_account_lock(user_id)

    try:
        if timeout:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        else:
            await lock.acquire()
    except asyncio.TimeoutError:
        logger.warning(f"Lock timeout for account {user_id}: {operation}")
        raise LockTimeoutError(
            f"Could not acquire lock for account {user_id} within {timeout}s"
        )

    logger.debug(f"Lock acquired for account {user_id}: {operation}")
    try:
        yield
    finally:
        lock.release()
        logger.debug(f"Lock released for account {user_id}: {operation}")


def is_account_locked(user_id: str) -> bool:
    lock = _account_locks.get(user_id)
    return lock is not None and lock.locked()


def clear_account_locks() -> None:
    """Clear all account locks (useful for testing)."""
    _account_locks.clear()
