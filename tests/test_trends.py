"""Tests for multi-window trend statistics."""

from datetime import datetime, timedelta

import pytest

from pricewatch.db.models import PriceRecord, Product
from pricewatch.detect.trends import TrendCalculator, mean_cents, percentage_change

NOW = datetime(2026, 6, 1, 12, 0, 0)


async def _product_with_prices(db, url, prices_by_age_days, **kwargs) -> Product:
    product = Product(url=url, name=kwargs.pop("name", "Widget"), **kwargs)
    db.add(product)
    await db.flush()
    for age_days, price in prices_by_age_days:
        db.add(
            PriceRecord(
                product_id=product.id,
                price=price,
                currency="USD",
                captured_at=NOW - timedelta(days=age_days),
            )
        )
    await db.commit()
    return product


def test_percentage_change():
    assert percentage_change(1200, 1000) == pytest.approx(20.0)
    assert percentage_change(900, 1000) == pytest.approx(-10.0)
    assert percentage_change(1000, 0) is None
    assert percentage_change(None, 1000) is None


def test_mean_cents_rounds_half_up():
    assert mean_cents([1000, 1001]) == 1001
    assert mean_cents([]) is None


@pytest.mark.asyncio
async def test_window_statistics(db_session):
    product = await _product_with_prices(
        db_session,
        "https://shop.example.com/w",
        [(1, 1200), (3, 1000), (10, 1000), (40, 800)],
    )

    trend = await TrendCalculator().calculate_for_product(db_session, product.id, now=NOW)

    assert trend.current_price == 1200
    assert trend.previous_price == 1000
    assert trend.currency == "USD"
    assert trend.vs_last_check == pytest.approx(20.0)
    assert trend.average(7) == 1100
    assert trend.change_vs_average(7) == pytest.approx(100 / 1100 * 100)
    assert trend.average(30) == 1067
    assert trend.average(90) == 1000
    assert trend.change_vs_average(90) == pytest.approx(20.0)
    assert trend.average(180) == 1000


@pytest.mark.asyncio
async def test_windows_with_one_record_are_none(db_session):
    product = await _product_with_prices(db_session, "https://shop.example.com/one", [(2, 500)])

    trend = await TrendCalculator().calculate_for_product(db_session, product.id, now=NOW)

    assert trend.current_price == 500
    assert trend.vs_last_check is None
    for days in (7, 30, 90, 180):
        assert trend.average(days) is None
        assert trend.change_vs_average(days) is None


@pytest.mark.asyncio
async def test_latest_price_outside_widest_window(db_session):
    product = await _product_with_prices(
        db_session, "https://shop.example.com/old", [(200, 700), (300, 900)]
    )

    trend = await TrendCalculator().calculate_for_product(db_session, product.id, now=NOW)

    assert trend.current_price == 700
    assert trend.previous_price == 900
    assert trend.average(180) is None


@pytest.mark.asyncio
async def test_product_without_history(db_session):
    product = await _product_with_prices(db_session, "https://shop.example.com/new", [])

    trend = await TrendCalculator().calculate_for_product(db_session, product.id, now=NOW)

    assert trend.current_price is None
    assert trend.currency is None
    assert trend.vs_last_check is None


@pytest.mark.asyncio
async def test_calculate_all_skips_inactive(db_session):
    await _product_with_prices(db_session, "https://a.example.com", [(1, 100)], name="A")
    await _product_with_prices(db_session, "https://b.example.com", [(1, 100)], name="B", active=False)

    trends = await TrendCalculator().calculate_all(db_session, now=NOW)

    assert [t.name for t in trends] == ["A"]


@pytest.mark.asyncio
async def test_unknown_product_returns_none(db_session):
    assert await TrendCalculator().calculate_for_product(db_session, 12345, now=NOW) is None
