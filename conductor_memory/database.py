"""Database engine and session factory construction.

Provides async SQLAlchemy engines (aiosqlite or asyncpg) and session factories.
Components receive the session factory explicitly; nothing here is cached at
module level.
"""

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from conductor_config.settings import Settings

SUPPORTED_DRIVERS = ("sqlite+aiosqlite", "postgresql+asyncpg")


def create_engine(database_url: str | None = None, echo: bool = False) -> AsyncEngine:
    """Create async engine.

    Args:
        database_url: Database connection URL (aiosqlite or asyncpg driver)
        echo: Log SQL statements

    Returns:
        AsyncEngine instance
    """
    url = database_url or Settings().DATABASE_URL
    driver = url.split("://")[0]

    if driver not in SUPPORTED_DRIVERS:
        raise ValueError(
            f"Database URL must use an async driver {SUPPORTED_DRIVERS}. Got: {driver}"
        )

    if driver == "sqlite+aiosqlite":
        engine = create_async_engine(url, echo=echo)

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_async_engine(
        url,
        echo=echo,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=20,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create async session factory bound to `engine`."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Don't expire objects after commit
        autoflush=False,
    )


async def init_schema(engine: AsyncEngine) -> None:
    """Create any missing tables."""
    from conductor_memory.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db_connection(engine: AsyncEngine) -> bool:
    """Check database connection health.

    Returns:
        bool: True if database is reachable

    Raises:
        Exception: If connection fails
    """
    async with engine.begin() as conn:
        result = await conn.execute(text("SELECT 1"))
        return result.scalar() == 1
