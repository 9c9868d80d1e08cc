import pytest
import pytest_asyncio
from sqlalchemy import select

from escrow_service import database
from escrow_service.config import settings
from escrow_service.models import Account
from escrow_service.seeder import DEMO_PAYERS, seed_accounts


@pytest_asyncio.fixture
async def configured_database(tmp_path):
    database.configure(f"sqlite+aiosqlite:///{tmp_path / 'seed.db'}")
    yield
    await database.engine.dispose()
    database.engine = None
    database.AsyncSessionLocal = None


async def load_accounts():
    async for session in database.get_session():
        result = await session.execute(select(Account))
        return {a.identity: a.balance for a in result.scalars().all()}


@pytest.mark.asyncio
async def test_seed_accounts_creates_merchant_and_payers(configured_database):
    await seed_accounts()

    accounts = await load_accounts()
    assert accounts[settings.merchant_id] == 0
    for identity, balance in DEMO_PAYERS.items():
        assert accounts[identity] == balance


@pytest.mark.asyncio
async def test_seed_accounts_is_idempotent(configured_database):
    await seed_accounts()
    await seed_accounts()

    accounts = await load_accounts()
    assert len(accounts) == len(DEMO_PAYERS) + 1
