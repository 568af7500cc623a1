"""Tests for price text normalization."""

import pytest

from pricewatch.normalize.price_parser import (
    ParsedPrice,
    detect_currency,
    parse_price,
    resolve_image_url,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("$19.99", ParsedPrice(1999, "USD")),
        ("19,99 €", ParsedPrice(1999, "EUR")),
        ("£1,234.56", ParsedPrice(123456, "GBP")),
        ("€1.234,56", ParsedPrice(123456, "EUR")),
        ("A$ 49.95", ParsedPrice(4995, "AUD")),
        ("1299.5 EUR", ParsedPrice(129950, "EUR")),
        ("Price: $19.99.", ParsedPrice(1999, "USD")),
        ("  42  ", ParsedPrice(4200, "USD")),
    ],
)
def test_parse_price_formats(text, expected):
    assert parse_price(text) == expected


def test_parse_price_rounds_half_up():
    assert parse_price("$10.005").cents == 1001


@pytest.mark.parametrize("text", [None, "", "   ", "Out of stock", "12.345.678"])
def test_parse_price_rejects_unparseable_text(text):
    assert parse_price(text) is None


def test_iso_code_overrides_symbol():
    assert detect_currency("$ 20.00 CAD") == "CAD"


def test_earliest_symbol_wins():
    assert detect_currency("£10 (was $15)") == "GBP"


def test_resolve_relative_image_url():
    assert (
        resolve_image_url("/img/item.jpg", "https://shop.example.com/p/1")
        == "https://shop.example.com/img/item.jpg"
    )


def test_resolve_protocol_relative_image_url():
    assert resolve_image_url("//cdn.example.com/a.png", "http://shop.example.com") == "https://cdn.example.com/a.png"


@pytest.mark.parametrize(
    "image_url",
    ["javascript:alert(1)", "data:image/png;base64,AAAA", "file:///etc/passwd", "", None],
)
def test_resolve_image_url_blocks_unsafe_values(image_url):
    assert resolve_image_url(image_url, "https://shop.example.com") is None


def test_resolve_image_url_requires_http_base_for_relative_paths():
    assert resolve_image_url("img.png", "ftp://files.example.com/") is None
