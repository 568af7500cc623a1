"""Tests for HTML product extraction."""

from pricewatch.ingest.extractor import ProductExtractor

BASE_URL = "https://shop.example.com/products/widget"

FILLER = "<p>" + "Plenty of descriptive product copy for shoppers. " * 10 + "</p>"


def _page(head: str = "", body: str = "") -> str:
    return f"<html><head>{head}</head><body>{body}{FILLER}</body></html>"


def test_json_ld_product():
    html = _page(
        head="""
        <script type="application/ld+json">
        {"@context": "https://schema.org", "@graph": [
            {"@type": "BreadcrumbList"},
            {"@type": "Product", "name": "Widget Pro", "image": ["/img/widget.jpg"],
             "offers": {"@type": "Offer", "price": "1299.00", "priceCurrency": "eur"}}
        ]}
        </script>
        """
    )
    extraction = ProductExtractor().extract(html, BASE_URL)

    assert extraction.product.title == "Widget Pro"
    assert extraction.product.price == 129900
    assert extraction.product.currency == "EUR"
    assert extraction.product.image_url == "https://shop.example.com/img/widget.jpg"
    assert extraction.sources["price"] == "json-ld"
    assert extraction.rendering_required is False


def test_json_ld_low_price_offer():
    html = _page(
        head="""
        <script type="application/ld+json">
        {"@type": "Product", "name": "Bundle",
         "offers": {"@type": "AggregateOffer", "lowPrice": 15.5, "priceCurrency": "USD"}}
        </script>
        """
    )
    product = ProductExtractor().extract(html, BASE_URL).product
    assert product.price == 1550
    assert product.currency == "USD"


def test_meta_tags():
    html = _page(
        head="""
        <meta property="og:title" content="Meta Widget">
        <meta property="og:image" content="https://cdn.example.com/meta.png">
        <meta property="product:price:amount" content="24.99">
        <meta property="product:price:currency" content="GBP">
        """
    )
    extraction = ProductExtractor().extract(html, BASE_URL)

    assert extraction.product.title == "Meta Widget"
    assert extraction.product.price == 2499
    assert extraction.product.currency == "GBP"
    assert extraction.product.image_url == "https://cdn.example.com/meta.png"
    assert extraction.sources["price"] == "meta"


def test_css_selectors():
    html = _page(
        body="""
        <div class="product_main"><h1>A Light in the Attic</h1>
        <p class="price_color">£51.77</p></div>
        <div class="thumbnail"><img src="../../media/cover.jpg"></div>
        """
    )
    product = ProductExtractor().extract(html, BASE_URL).product

    assert product.title == "A Light in the Attic"
    assert product.price == 5177
    assert product.currency == "GBP"
    assert product.image_url == "https://shop.example.com/media/cover.jpg"


def test_unparseable_price_text_is_flagged():
    html = _page(body='<h1>Widget</h1><span class="price">Call for price</span>')
    extraction = ProductExtractor().extract(html, BASE_URL)

    assert extraction.product.title == "Widget"
    assert extraction.product.price is None
    assert extraction.price_text_found is True


def test_empty_app_shell_requires_rendering():
    html = '<html><body><div id="root"></div><script src="/app.js"></script></body></html>'
    extraction = ProductExtractor().extract(html, BASE_URL)

    assert extraction.product.is_empty
    assert extraction.rendering_required is True


def test_javascript_notice_requires_rendering():
    html = "<html><body><p>Please enable JavaScript to view this page.</p></body></html>"
    assert ProductExtractor().extract(html, BASE_URL).rendering_required is True
