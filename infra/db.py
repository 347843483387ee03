from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .settings import settings


class Base(DeclarativeBase):
    pass


# Schema management runs synchronously from the CLI
sync_engine = create_engine(settings.database_url)

# Every wallet, betting and settlement unit of work runs on an AsyncSession
async_engine = create_async_engine(settings.database_url, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(
    async_engine, autocommit=False, autoflush=False, expire_on_commit=False
)


def create_schema():
    """Create the ledger tables on the configured database"""
    import domain.models  # noqa: F401  registers the mapped tables

    Base.metadata.create_all(sync_engine)


async def get_async_db():
    """FastAPI dependency yielding one session per request"""
    async with AsyncSessionLocal() as session:
        yield session
