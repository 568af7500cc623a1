"""Tests for the check-price job handler."""

import pytest
from sqlalchemy import select

from pricewatch.db.models import PriceRecord, Product, RunLog
from pricewatch.ingest.base import ExtractedProduct, ScrapeErrorCode, ScrapeResult
from pricewatch.worker.jobs import (
    CheckPricePayload,
    Job,
    RetryableJobError,
    UnrecoverableJobError,
)

URL = "https://shop.example.com/products/widget"


def _job(attempts_made: int = 0, max_attempts: int = 3, data=None) -> Job:
    return Job(
        id="7",
        kind="check-price",
        data=data or {},
        state="active",
        attempts_made=attempts_made,
        max_attempts=max_attempts,
    )


def _priced(title="Widget", price=1999, currency="USD", image_url=None) -> ScrapeResult:
    return ScrapeResult.ok(
        ExtractedProduct(title=title, price=price, currency=currency, image_url=image_url),
        "static",
    )


async def _all(session_factory, model):
    async with session_factory() as db:
        return list((await db.execute(select(model))).scalars().all())


async def _add_product(session_factory, **kwargs) -> Product:
    async with session_factory() as db:
        product = Product(url=kwargs.pop("url", URL), **kwargs)
        db.add(product)
        await db.commit()
        return product


@pytest.mark.asyncio
async def test_new_url_with_price_creates_product_and_record(handlers, fake_pipeline, session_factory):
    fake_pipeline.results[URL] = _priced(image_url="https://cdn.example.com/w.png")

    outcome = await handlers.check_price(_job(), CheckPricePayload(url=URL))

    assert outcome["status"] == "success"
    assert outcome["success"] is True
    assert outcome["price"] == 1999

    [product] = await _all(session_factory, Product)
    assert product.name == "Widget"
    assert product.image_url == "https://cdn.example.com/w.png"
    assert product.last_success_at is not None
    assert outcome["product_id"] == product.id

    [record] = await _all(session_factory, PriceRecord)
    assert (record.product_id, record.price, record.currency) == (product.id, 1999, "USD")

    [log] = await _all(session_factory, RunLog)
    assert (log.product_id, log.status) == (product.id, "SUCCESS")


@pytest.mark.asyncio
async def test_existing_product_name_is_not_overwritten(handlers, fake_pipeline, session_factory):
    await _add_product(session_factory, name="My Widget")
    fake_pipeline.results[URL] = _priced(title="Widget 3000 - Shop")

    await handlers.check_price(_job(), CheckPricePayload(url=URL))

    [product] = await _all(session_factory, Product)
    assert product.name == "My Widget"
    assert len(await _all(session_factory, PriceRecord)) == 1


@pytest.mark.asyncio
async def test_title_only_extraction_saves_no_price(handlers, fake_pipeline, session_factory):
    fake_pipeline.results[URL] = _priced(price=None, currency=None)

    outcome = await handlers.check_price(_job(), CheckPricePayload(url=URL))

    assert outcome["status"] == "partial"
    assert outcome["success"] is True
    [product] = await _all(session_factory, Product)
    assert product.name == "Widget"
    assert product.last_success_at is None
    assert await _all(session_factory, PriceRecord) == []
    [log] = await _all(session_factory, RunLog)
    assert log.status == "SUCCESS"


@pytest.mark.asyncio
async def test_transient_failure_retries_without_logging(handlers, fake_pipeline, session_factory):
    fake_pipeline.results[URL] = ScrapeResult.failure(ScrapeErrorCode.TIMEOUT, "slow", "static")

    with pytest.raises(RetryableJobError):
        await handlers.check_price(_job(attempts_made=0), CheckPricePayload(url=URL))

    assert await _all(session_factory, RunLog) == []
    assert await _all(session_factory, Product) == []


@pytest.mark.asyncio
async def test_final_transient_failure_is_recorded_by_failure_hook(handlers, fake_pipeline, session_factory):
    product = await _add_product(session_factory, name="Widget")
    fake_pipeline.results[URL] = ScrapeResult.failure(ScrapeErrorCode.FETCH_ERROR, "HTTP 503", "static")
    job = _job(attempts_made=2, data={"url": URL})

    with pytest.raises(RetryableJobError) as exc_info:
        await handlers.check_price(job, CheckPricePayload(url=URL))
    # The handler leaves terminal bookkeeping to the worker
    assert await _all(session_factory, RunLog) == []

    await handlers.on_check_price_failed(job, str(exc_info.value))

    [log] = await _all(session_factory, RunLog)
    assert (log.product_id, log.status, log.error_message) == (product.id, "FAILED", "HTTP 503")
    [stored] = await _all(session_factory, Product)
    assert stored.last_failed_at is not None


@pytest.mark.asyncio
async def test_failure_hook_for_unseen_url_logs_without_product(handlers, session_factory):
    await handlers.on_check_price_failed(_job(data={"url": URL}), "Job timed out after 120s")

    assert await _all(session_factory, Product) == []
    [log] = await _all(session_factory, RunLog)
    assert (log.product_id, log.status) == (None, "FAILED")


@pytest.mark.asyncio
async def test_no_price_found_completes_as_failed(handlers, fake_pipeline, session_factory):
    fake_pipeline.results[URL] = ScrapeResult.failure(
        ScrapeErrorCode.NO_PRICE_FOUND, "No price found on page", "headless"
    )

    outcome = await handlers.check_price(_job(), CheckPricePayload(url=URL))

    assert outcome["status"] == "failed"
    assert outcome["success"] is False
    assert outcome["error_code"] == "NO_PRICE_FOUND"
    # Unknown URLs are only created by a successful scrape
    assert await _all(session_factory, Product) == []
    [log] = await _all(session_factory, RunLog)
    assert (log.product_id, log.status) == (None, "FAILED")


@pytest.mark.asyncio
async def test_product_id_shim_checks_product_url(handlers, fake_pipeline, session_factory):
    product = await _add_product(session_factory, name="Widget")
    fake_pipeline.results[URL] = _priced()

    outcome = await handlers.check_price(_job(), CheckPricePayload(product_id=str(product.id)))

    assert fake_pipeline.calls == [URL]
    assert outcome["product_id"] == product.id


@pytest.mark.asyncio
async def test_unknown_product_id_is_unrecoverable(handlers, fake_pipeline):
    with pytest.raises(UnrecoverableJobError):
        await handlers.check_price(_job(), CheckPricePayload(product_id="404"))
    assert fake_pipeline.calls == []
