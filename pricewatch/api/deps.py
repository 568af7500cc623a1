"""FastAPI dependencies."""

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.worker.queue import JobQueue


async def get_database(request: Request) -> AsyncSession:
    """Dependency for database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


def get_queue(request: Request) -> JobQueue:
    """Dependency for the job queue built at startup."""
    return request.app.state.queue
