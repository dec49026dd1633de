from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker

from engine.src.models.db import Base

def async_database_url(database_url: str) -> str:
    """Convert postgresql:// to postgresql+asyncpg://"""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url

def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(async_database_url(database_url), echo=echo)

def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

async def init_db(engine: AsyncEngine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
