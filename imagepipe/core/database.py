from typing import Optional

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

# Import ALL models to ensure they're registered with SQLModel.metadata
from imagepipe.modules.imagery.models import ImageJob  # noqa: F401


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the relational job repository.

    In-memory SQLite needs a single shared connection, otherwise every
    session would see its own empty database.
    """
    kwargs = {}
    is_memory_sqlite = database_url.startswith("sqlite") and (
        ":memory:" in database_url or database_url.endswith("://")
    )
    if is_memory_sqlite:
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_async_engine(database_url, echo=echo, future=True, **kwargs)


def create_session_maker(engine: AsyncEngine) -> sessionmaker:
    """Create async session factory."""
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_db_and_tables(engine: AsyncEngine):
    """Create all tables if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: SQLModel.metadata.create_all(sync_conn, checkfirst=True))


async def ping(engine: Optional[AsyncEngine]) -> bool:
    """Readiness probe for the database."""
    if engine is None:
        return True
    from sqlalchemy import text
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    return True
