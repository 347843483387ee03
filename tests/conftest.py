from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from domain.clock import RoundClock
from domain.services import BettingService, SettlementService, WalletService
from infra.db import Base


# 2025-09-01 12:00:00 UTC falls exactly on a round boundary
ROUND_START = datetime(2025, 9, 1, 12, 0, tzinfo=timezone.utc)
OPEN_AT = ROUND_START + timedelta(seconds=10)
CLOSING_AT = ROUND_START + timedelta(seconds=56)
NEXT_ROUND_AT = ROUND_START + timedelta(seconds=70)
# Settlement pass run by the scheduler once the first round has closed
SETTLE_AT = ROUND_START + timedelta(seconds=62)


class FixedRandom:
    """Stand-in for random.Random with a scripted draw"""

    def __init__(self, value: float = 0.0, choice_index: int = 0, number: int = 0):
        self.value = value
        self.choice_index = choice_index
        self.number = number
        self.calls = 0

    def random(self) -> float:
        self.calls += 1
        return self.value

    def choice(self, seq):
        return seq[self.choice_index]

    def randrange(self, stop):
        return self.number % stop


@pytest.fixture
def clock():
    return RoundClock(round_seconds=60, closing_buffer_seconds=5)


@pytest.fixture
def house_edge_rng():
    """Always takes the least-staked branch"""
    return FixedRandom(value=0.0)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def async_db(session_factory):
    """Create an async test database session"""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def wallet_service(async_db):
    return WalletService(async_db)


@pytest_asyncio.fixture
async def betting_service(async_db, wallet_service, clock):
    return BettingService(async_db, wallet_service, clock=clock)


@pytest_asyncio.fixture
async def settlement_service(async_db, wallet_service, clock, house_edge_rng):
    return SettlementService(async_db, wallet_service, clock=clock, rng=house_edge_rng)


@pytest_asyncio.fixture
async def setup_wallets(session_factory):
    """Wallet service on its own session.

    Users created here stay loaded when a failed operation rolls back the
    session under test.
    """
    async with session_factory() as session:
        yield WalletService(session)


@pytest_asyncio.fixture
async def test_user(setup_wallets):
    """A registered user with an empty wallet"""
    return await setup_wallets.register_user("test@example.com", "Test User")


@pytest_asyncio.fixture
async def funded_user(setup_wallets, test_user):
    """A registered user holding 1000 units"""
    await setup_wallets.deposit(test_user.id, 1000)
    return test_user


@pytest_asyncio.fixture
async def make_funded_user(setup_wallets):
    counter = {"n": 0}

    async def factory(balance: int = 1000):
        counter["n"] += 1
        user = await setup_wallets.register_user(f"user{counter['n']}@example.com")
        if balance:
            await setup_wallets.deposit(user.id, balance)
        return user

    return factory
