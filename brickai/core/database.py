from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, async_sessionmaker, AsyncSession
from sqlmodel import SQLModel

# Import ALL models to ensure they're registered with SQLModel.metadata
from brickai.modules.users.models import User  # noqa: F401
from brickai.modules.imagery.models import ImageRecord  # noqa: F401


def create_engine(database_url: str) -> AsyncEngine:
    """Create the async engine for the record/user store."""
    return create_async_engine(database_url, echo=False, future=True)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_db_and_tables(engine: AsyncEngine):
    """Create all tables if they don't exist.

    Uses checkfirst=True to avoid errors when tables already exist.
    """
    async with engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: SQLModel.metadata.create_all(sync_conn, checkfirst=True))
