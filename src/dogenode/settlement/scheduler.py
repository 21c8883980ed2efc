"""Daily withdrawal limit reset.

Accounts reset lazily on first use each day; this sweep brings idle accounts
in line so reported daily figures are current.
"""

import logging
from datetime import date
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dogenode.config import Settings, get_settings
from dogenode.ledger.database import get_db
from dogenode.ledger.models import utctoday
from dogenode.ledger.repository import LedgerStore
from dogenode.settlement.loops import PeriodicTask

logger = logging.getLogger(__name__)


class LimitResetScheduler(PeriodicTask):
    """Runs the reset sweep on the first cycle of each UTC day."""

    name = "limit-reset-scheduler"

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        today: Callable[[], date] = utctoday,
    ):
        self.settings = settings or get_settings()
        super().__init__(self.settings.limit_reset_interval)
        self.session_factory = session_factory
        self.today = today
        self.last_sweep: Optional[date] = None

    async def run_once(self) -> int:
        today = self.today()
        if self.last_sweep == today:
            return 0

        async with get_db(self.session_factory) as session:
            ledger = LedgerStore(session, self.settings.withdrawal_daily_limit)
            reset = await ledger.reset_daily_limits(today)

        self.last_sweep = today
        logger.info(f"Daily limits reset for {reset} accounts ({today.isoformat()})")
        return reset
