"""Shared fixtures: SQLite database, in-memory Redis and job queue."""

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from pricewatch.db.models import Base
from pricewatch.notify.digest import DigestDispatcher
from pricewatch.worker.flows import FlowOrchestrator
from pricewatch.worker.queue import JobQueue
from pricewatch.worker.tasks import JobHandlers


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pricewatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def queue(redis_client):
    return JobQueue(
        redis_client,
        name="test-queue",
        attempts=3,
        backoff_seconds=0,
        lock_seconds=60,
    )


class FakePipeline:
    """Scraper pipeline stand-in returning canned results per URL."""

    def __init__(self, results=None):
        self.results = dict(results or {})
        self.calls = []

    async def extract(self, url):
        self.calls.append(url)
        return self.results[url]

    async def close(self):
        pass


class FakeEmailClient:
    """Records sent emails instead of calling the provider."""

    def __init__(self, accept: bool = True):
        self.accept = accept
        self.sent = []

    async def send(self, to, subject, html, text=None):
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        return self.accept

    async def close(self):
        pass


@pytest.fixture
def fake_pipeline():
    return FakePipeline()


@pytest.fixture
def fake_email():
    return FakeEmailClient()


@pytest.fixture
def handlers(session_factory, queue, fake_pipeline, fake_email):
    return JobHandlers(
        session_factory=session_factory,
        queue=queue,
        pipeline=fake_pipeline,
        orchestrator=FlowOrchestrator(queue),
        digest_dispatcher=DigestDispatcher(email_client=fake_email, recipient="ops@example.com"),
    )
