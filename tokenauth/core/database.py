"""tokenauth Database Configuration - Async SQLAlchemy."""

from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from tokenauth.core.config import settings


def _engine_options() -> dict[str, Any]:
    """Connection pool options; SQLite does not take pool sizing arguments."""
    options: dict[str, Any] = {
        # Only echo SQL when debug is explicitly enabled
        "echo": settings.debug and settings.log_level == "DEBUG",
    }
    if not settings.is_sqlite:
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=True,  # Verify connection before use
        )
    return options


engine: AsyncEngine = create_async_engine(settings.database_url, **_engine_options())

# Session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Base class for models
Base = declarative_base()


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Dependency returning the session factory.

    The token store opens one short transaction per operation, so routes
    receive the factory rather than a request-scoped session.
    """
    return async_session_maker


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create tables that do not exist yet (development convenience; use Alembic in production)."""
    import tokenauth.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db_connection(session_maker: async_sessionmaker[AsyncSession] | None = None) -> bool:
    """Check if database is reachable."""
    try:
        async with (session_maker or async_session_maker)() as session:
            await session.execute(text("SELECT 1"))
            return True
    except (OSError, ConnectionError) as e:
        # Expected network/connection errors
        from tokenauth.core.logging import get_logger

        get_logger("database").debug(f"Database connection check failed: {e}")
        return False
    except Exception as e:
        from tokenauth.core.logging import get_logger

        get_logger("database").warning(f"Unexpected error checking database connection: {e}")
        return False
