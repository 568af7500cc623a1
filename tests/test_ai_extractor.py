"""Tests for the optional AI extraction tier."""

import json
from types import SimpleNamespace

import pytest

from pricewatch.ingest.base import ScrapeError, ScrapeErrorCode
from pricewatch.ingest.fetchers.ai import AIExtractor, prepare_html


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(content):
    completions = FakeCompletions(content)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return client, completions


def test_prepare_html_strips_scripts_but_keeps_json_ld():
    html = (
        "<html><head><style>body{}</style></head><body>"
        '<script>track()</script><script type="application/ld+json">{"@type":"Product"}</script>'
        "<h1>Widget</h1>   <p>Great   value</p></body></html>"
    )
    prepared = prepare_html(html)

    assert "track()" not in prepared
    assert "body{}" not in prepared
    assert '{"@type":"Product"}' in prepared
    assert "Great value" in prepared


def test_prepare_html_truncates():
    prepared = prepare_html("<html><body>" + "x" * 500 + "</body></html>", max_chars=100)
    assert prepared.endswith("... [truncated]")
    assert len(prepared) == 100 + len("... [truncated]")


@pytest.mark.asyncio
async def test_extracts_fields_from_json_response():
    client, completions = _client(
        json.dumps({"title": " Widget ", "price": "1,299.99", "currency": "eur", "imageUrl": "/w.png"})
    )
    extractor = AIExtractor(client=client, model="test-model")

    product = await extractor.extract("https://shop.example.com/p/1", "<html><body>Widget</body></html>")

    assert product.title == "Widget"
    assert product.price == 129999
    assert product.currency == "EUR"
    assert product.image_url == "https://shop.example.com/w.png"
    assert completions.requests[0]["model"] == "test-model"
    assert completions.requests[0]["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
async def test_defaults_currency_when_price_present():
    client, _ = _client(json.dumps({"title": "Widget", "price": 5}))
    product = await AIExtractor(client=client).extract("https://shop.example.com", "<p></p>")
    assert (product.price, product.currency) == (500, "USD")


@pytest.mark.asyncio
@pytest.mark.parametrize("price", [-1, "NaN", "free", True])
async def test_rejects_invalid_prices(price):
    client, _ = _client(json.dumps({"title": "Widget", "price": price}))
    product = await AIExtractor(client=client).extract("https://shop.example.com", "<p></p>")
    assert product.price is None
    assert product.currency is None


@pytest.mark.asyncio
async def test_non_json_response_is_parse_error():
    client, _ = _client("I could not find a price")
    with pytest.raises(ScrapeError) as exc_info:
        await AIExtractor(client=client).extract("https://shop.example.com", "<p></p>")
    assert exc_info.value.code == ScrapeErrorCode.PARSE_ERROR
    assert exc_info.value.retryable is False
