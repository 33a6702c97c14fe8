import logging
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from turnloop.configuration.config import Settings, get_settings

logger = logging.getLogger(__name__)


def build_engine(settings: Settings | None = None, url: str | None = None) -> AsyncEngine:
    """
    Create the async engine.

    Pool sizing only applies to PostgreSQL; other dialects (SQLite in tests)
    use SQLAlchemy's defaults.
    """
    settings = settings or get_settings()
    url = url or settings.postgres_url
    kwargs: dict[str, Any] = {"echo": settings.log_level.upper() == "DEBUG"}
    if url.startswith("postgresql"):
        # pool_recycle: recycle connections after this many seconds
        # pool_pre_ping: test connections before using them
        kwargs.update(
            pool_size=settings.postgres_pool_size,
            max_overflow=settings.postgres_max_overflow,
            pool_recycle=settings.postgres_pool_recycle,
            pool_pre_ping=settings.postgres_pool_pre_ping,
        )
    return create_async_engine(url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def initialize_database(engine: AsyncEngine) -> None:
    """
    Initialize database schema.

    Creates all tables defined in the SQLAlchemy models.
    """
    from turnloop.infrastructure.adapters.secondary.persistence.models import Base

    logger.info("Initializing database schema...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema initialized")
