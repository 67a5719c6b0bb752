"""
Database setup and session management.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.config.settings import get_settings
from app.domain.reminder import Base
from app.domain import usage  # noqa: F401 - needed for table creation

settings = get_settings()


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine.

    An in-memory database only exists on its own connection, so it is pinned
    with StaticPool. File databases get a regular pool, one connection per
    concurrent session.
    """
    if ":memory:" in database_url:
        return create_async_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(
        database_url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": 30},
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    """Session factory that keeps loaded attributes usable after commit."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = create_engine(settings.database_url, echo=settings.debug)
async_session_factory = create_session_factory(engine)


async def init_database(bind: AsyncEngine = None) -> None:
    """Initialize database and create tables."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
