"""Pytest configuration and fixtures."""

import os
from decimal import Decimal
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "false"

from dogenode.config import Settings
from dogenode.errors import TransactionDropped
from dogenode.ledger.database import create_engine_for_url, get_db, init_db, make_session_factory
from dogenode.ledger.models import Account, RailName, SettlementRecord
from dogenode.ledger.repository import LedgerStore
from dogenode.ledger.transactions import TransactionStore
from dogenode.rails.base import RailReceipt, SettlementRail, is_native_address, is_token_address
from dogenode.rails.selector import RailSelector
from dogenode.settlement.engine import SettlementEngine
from dogenode.settlement.monitor import ConfirmationMonitor
from dogenode.utils.locks import clear_account_locks

NATIVE_ADDRESS = "DH5yaieqoZN36fDVciNyRueRGvGLR3mr7L"
TOKEN_ADDRESS = "0x000000000000000000000000000000000000dEaD"
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


class FakeRail(SettlementRail):
    """In-memory rail with scripted send outcomes.

    ``send_results`` is consumed one entry per send: an exception is raised,
    a RailReceipt is returned, None means a generated receipt.
    """

    def __init__(self, name: RailName, min_confirmations: int = 6, available: bool = True):
        super().__init__(enabled=True)
        self.name = name
        self.min_confirmations = min_confirmations
        self._connected = available
        self._connect_attempted = True

        self.send_results: list = []
        self.sent: list[tuple[str, Decimal, str]] = []
        self.confirmations: dict[str, int] = {}
        self.block_heights: dict[str, int] = {}
        self.dropped: set[str] = set()
        self.confirmation_error: Optional[Exception] = None
        self.lookup_result: Optional[RailReceipt] = None
        self.lookups: list[tuple[str, Optional[str]]] = []

    def set_available(self, available: bool) -> None:
        self._connected = available

    async def _check_connectivity(self) -> bool:
        return True

    async def validate_address(self, address: str) -> bool:
        if self.name == RailName.TOKEN:
            return is_token_address(address)
        return is_native_address(address)

    async def get_balance(self, address: Optional[str] = None) -> Decimal:
        return Decimal("1000000")

    async def send(self, to_address: str, amount: Decimal, reference: str) -> RailReceipt:
        self.sent.append((to_address, amount, reference))
        result = self.send_results.pop(0) if self.send_results else None
        if isinstance(result, Exception):
            raise result
        if result is None:
            tx_hash = f"{self.name.value}-tx-{len(self.sent)}"
            result = RailReceipt(tx_hash, f"https://explorer.test/tx/{tx_hash}", "test")
        return result

    async def get_confirmations(self, tx_hash: str) -> int:
        if self.confirmation_error is not None:
            raise self.confirmation_error
        if tx_hash in self.dropped:
            raise TransactionDropped(f"{tx_hash} dropped")
        return self.confirmations.get(tx_hash, 0)

    async def get_block_height(self, tx_hash: str) -> Optional[int]:
        return self.block_heights.get(tx_hash)

    async def lookup_broadcast(
        self, reference: str, tx_hash: Optional[str] = None
    ) -> Optional[RailReceipt]:
        self.lookups.append((reference, tx_hash))
        return self.lookup_result


@pytest.fixture(autouse=True)
def reset_locks():
    """Clear account locks before each test."""
    clear_account_locks()
    yield
    clear_account_locks()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'dogenode-test.db'}",
        environment="test",
        debug=False,
        withdrawal_min_amount=Decimal("10"),
        withdrawal_max_amount=Decimal("10000"),
        withdrawal_fee_fixed=Decimal("1"),
        withdrawal_fee_percent=Decimal("0"),
        withdrawal_daily_limit=Decimal("50000"),
        withdrawal_max_retries=3,
        retry_base_delay=2.0,
        retry_max_delay=60.0,
        monitor_max_attempts=3,
        min_confirmations=6,
        token_min_confirmations=15,
        webhook_secret=None,
    )


@pytest_asyncio.fixture
async def db_engine(settings):
    """File backed SQLite engine with all tables created."""
    engine = create_engine_for_url(settings.database_url)
    await init_db(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def ledger(db_session) -> LedgerStore:
    return LedgerStore(db_session, Decimal("50000"))


@pytest.fixture
def records(db_session) -> TransactionStore:
    return TransactionStore(db_session)


@pytest.fixture
def rails() -> dict[RailName, FakeRail]:
    return {
        RailName.NODE: FakeRail(RailName.NODE),
        RailName.EXPLORER: FakeRail(RailName.EXPLORER),
        RailName.TOKEN: FakeRail(RailName.TOKEN, min_confirmations=15),
    }


@pytest.fixture
def selector(rails) -> RailSelector:
    return RailSelector(rails.values())


@pytest.fixture
def fake_sleep() -> AsyncMock:
    """Backoff sleep that returns immediately and records its delays."""
    return AsyncMock()


@pytest.fixture
def engine(selector, session_factory, settings, fake_sleep) -> SettlementEngine:
    return SettlementEngine(selector, session_factory, settings, sleep=fake_sleep)


@pytest.fixture
def monitor(selector, session_factory, settings) -> ConfirmationMonitor:
    return ConfirmationMonitor(selector, session_factory, settings)


@pytest.fixture
def fund(session_factory, settings):
    """Credit an account, creating it if needed."""

    async def _fund(user_id: str, amount) -> Account:
        async with get_db(session_factory) as session:
            ledger = LedgerStore(session, settings.withdrawal_daily_limit)
            return await ledger.credit(user_id, Decimal(str(amount)))

    return _fund


@pytest.fixture
def load_account(session_factory, settings):
    """Read an account in a fresh session."""

    async def _load(user_id: str) -> Optional[Account]:
        async with get_db(session_factory) as session:
            return await LedgerStore(session, settings.withdrawal_daily_limit).get_account(user_id)

    return _load


@pytest.fixture
def load_record(session_factory):
    """Read a settlement record in a fresh session."""

    async def _load(record_id: str) -> Optional[SettlementRecord]:
        async with get_db(session_factory) as session:
            return await TransactionStore(session).get(record_id)

    return _load
