from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from escrow_service.config import settings
from escrow_service.models import Base

engine = None
AsyncSessionLocal = None


def configure(database_url: str = None):
    global engine, AsyncSessionLocal
    engine = create_async_engine(database_url or settings.database_url, future=True)
    AsyncSessionLocal = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )
    return AsyncSessionLocal


async def init_db():
    if engine is None:
        configure()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session():
    if AsyncSessionLocal is None:
        configure()
    async with AsyncSessionLocal() as session:
        yield session
