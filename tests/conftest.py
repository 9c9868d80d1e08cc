import httpx
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from escrow_service import main
from escrow_service.client import LedgerClient
from escrow_service.ledger import EscrowLedger
from escrow_service.models import Base
from escrow_service.orders import derive_order_id

TIMEOUT = 900
MERCHANT = "merchant-wallet"
CONFIRMER = "backend"
RECONCILER = "reconciler"
PAYER = "payer-A"


class FakeClock:
    """Controllable ledger clock."""

    def __init__(self, start=datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def ledger(session_factory, clock):
    return EscrowLedger(
        session_factory,
        merchant=MERCHANT,
        timeout_seconds=TIMEOUT,
        confirmers=[CONFIRMER],
        clock=clock,
    )


@pytest.fixture
def mock_publish():
    with patch("escrow_service.main.publish_event", new=AsyncMock()) as mock_publish_event:
        yield mock_publish_event


@pytest_asyncio.fixture
async def http_client(ledger, mock_publish):
    main.app.dependency_overrides[main.get_ledger] = lambda: ledger
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://ledger") as client:
        yield client
    main.app.dependency_overrides.clear()


@pytest.fixture
def confirmer_client(http_client):
    return LedgerClient(http_client, identity=CONFIRMER, op_timeout=5.0, receipt_poll_interval=0.01)


@pytest.fixture
def reconciler_client(http_client):
    return LedgerClient(http_client, identity=RECONCILER, op_timeout=5.0, receipt_poll_interval=0.01)


async def open_payment(ledger, payment_ref, amount=10, payer=PAYER):
    """Fund ``payer`` and lock ``amount`` in escrow. Returns the order id."""
    order_id = derive_order_id(payment_ref)
    await ledger.credit(payer, amount)
    await ledger.create(order_id, payer, amount)
    return order_id
