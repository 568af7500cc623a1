"""Tests for the headless renderer's error mapping."""

import pytest
from playwright.async_api import Error as PlaywrightError

from pricewatch.ingest.base import ScrapeError, ScrapeErrorCode
from pricewatch.ingest.fetchers.headless import HeadlessRenderer

URL = "https://shop.example.com/products/widget"


class CrashedBrowser:
    """Browser whose process died after launch."""

    def __init__(self):
        self.context_attempts = 0

    async def new_context(self, **kwargs):
        self.context_attempts += 1
        raise PlaywrightError("Target page, context or browser has been closed")


@pytest.mark.asyncio
async def test_context_creation_failure_maps_to_fetch_error(monkeypatch):
    renderer = HeadlessRenderer()
    browser = CrashedBrowser()

    async def ensure_browser():
        return browser

    monkeypatch.setattr(renderer, "_ensure_browser", ensure_browser)

    with pytest.raises(ScrapeError) as exc_info:
        await renderer.render(URL)

    assert exc_info.value.code == ScrapeErrorCode.FETCH_ERROR
    assert exc_info.value.retryable
    assert browser.context_attempts == 1
