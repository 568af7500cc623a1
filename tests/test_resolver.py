"""Tests for URL-first product resolution."""

import asyncio
import os

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from pricewatch.db.models import PRODUCT_NAME_PLACEHOLDER, Base, Product
from pricewatch.db.resolver import ProductResolver

URL = "https://shop.example.com/products/widget"


async def _count_products(db) -> int:
    return (await db.execute(select(func.count()).select_from(Product))).scalar_one()


@pytest.mark.asyncio
async def test_creates_product_on_first_sight(db_session):
    product = await ProductResolver().resolve(db_session, URL, "Widget")

    assert product.id is not None
    assert product.url == URL
    assert product.name == "Widget"
    assert product.active is True


@pytest.mark.asyncio
async def test_placeholder_name_when_no_fallback(db_session):
    product = await ProductResolver().resolve(db_session, URL)
    assert product.name == PRODUCT_NAME_PLACEHOLDER


@pytest.mark.asyncio
async def test_existing_product_is_returned_unchanged(db_session):
    existing = Product(url=URL, name="User Supplied Name")
    db_session.add(existing)
    await db_session.commit()

    product = await ProductResolver().resolve(db_session, URL, "Scraped Title")

    assert product.id == existing.id
    assert product.name == "User Supplied Name"
    assert await _count_products(db_session) == 1


@pytest.mark.asyncio
async def test_lost_insert_race_returns_winner(session_factory):
    """A concurrent insert between lookup and insert is absorbed, not raised."""
    resolver = ProductResolver()
    original_find = resolver.find_by_url
    misses = {"remaining": 1}

    async def stale_find(db, url):
        if misses["remaining"]:
            misses["remaining"] -= 1
            # Another worker wins the race while this one still sees no row
            async with session_factory() as other:
                other.add(Product(url=url, name="Winner"))
                await other.commit()
            return None
        return await original_find(db, url)

    resolver.find_by_url = stale_find

    async with session_factory() as db:
        product = await resolver.resolve(db, URL, "Loser")
        assert product.name == "Winner"
        assert await _count_products(db) == 1


async def _resolve_concurrently(factory, times: int = 10) -> list[Product]:
    resolver = ProductResolver()

    async def resolve_once():
        async with factory() as db:
            return await resolver.resolve(db, URL, "Widget")

    return await asyncio.gather(*(resolve_once() for _ in range(times)))


@pytest.mark.asyncio
async def test_concurrent_first_sight_creates_one_row(session_factory):
    products = await _resolve_concurrently(session_factory)

    assert len({p.id for p in products}) == 1
    async with session_factory() as db:
        assert await _count_products(db) == 1


@pytest.mark.asyncio
async def test_concurrent_first_sight_creates_one_row_postgres():
    database_url = os.environ.get("TEST_DATABASE_URL")
    if not database_url:
        pytest.skip("TEST_DATABASE_URL not set (needs PostgreSQL)")

    engine = create_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)

    try:
        products = await _resolve_concurrently(factory)
        assert len({p.id for p in products}) == 1
        async with factory() as db:
            assert await _count_products(db) == 1
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()
