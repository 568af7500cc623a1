"""Async database engine and session factory."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from pricewatch.config import settings


def create_engine(database_url: str | None = None, **kwargs) -> AsyncEngine:
    """Create an async engine for the configured database."""
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        return create_async_engine(url, **kwargs)
    return create_async_engine(
        url,
        pool_pre_ping=True,
        pool_size=max(5, settings.worker_concurrency),
        max_overflow=10,
        **kwargs,
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to an engine."""
    return async_sessionmaker(bind, expire_on_commit=False)


engine = create_engine()
AsyncSessionLocal = create_session_factory(engine)
