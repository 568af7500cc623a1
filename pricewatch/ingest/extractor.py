"""Extract product title, price and image from HTML.

Sources are tried per field in order of reliability: JSON-LD ``Product``
markup, then OpenGraph/``product:price`` meta tags and microdata, then
heuristic CSS selectors.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from selectolax.parser import HTMLParser, Node

from pricewatch.ingest.base import ExtractedProduct
from pricewatch.normalize.price_parser import ParsedPrice, parse_price, resolve_image_url

logger = logging.getLogger(__name__)

# Title extraction selectors (priority order)
TITLE_SELECTORS = [
    'h1[data-testid="product-title"]',
    "#productTitle",  # Amazon
    "h1.product-title",
    'h1[itemprop="name"]',
    ".product-name h1",
    ".product_main h1",  # books.toscrape.com
    "h1",
]

# Price extraction selectors (priority order)
PRICE_SELECTORS = [
    '[data-testid="price"]',
    ".price-current",
    "#priceblock_ourprice",  # Amazon
    "#priceblock_dealprice",  # Amazon deals
    ".a-price .a-offscreen",  # Amazon new format
    ".product-price",
    '[itemprop="price"]',
    ".price_color",  # books.toscrape.com
    ".price",
]

# Image extraction selectors (priority order)
IMAGE_SELECTORS = [
    "#landingImage",  # Amazon
    "#imgTagWrapperId img",  # Amazon
    '[data-testid="product-image"] img',
    ".product-image img",
    '[itemprop="image"]',
    ".thumbnail img",  # books.toscrape.com
    ".gallery img",
    ".product_gallery img",
]

IMAGE_ATTRIBUTES = ("src", "data-src", "data-old-hires", "content", "href")

PRICE_META_SELECTORS = [
    'meta[property="product:price:amount"]',
    'meta[property="og:price:amount"]',
    'meta[itemprop="price"]',
]

CURRENCY_META_SELECTORS = [
    'meta[property="product:price:currency"]',
    'meta[property="og:price:currency"]',
    'meta[itemprop="priceCurrency"]',
    '[itemprop="priceCurrency"]',
]

JS_REQUIRED_PATTERNS = re.compile(
    r"enable javascript|javascript is (?:required|disabled)|requires javascript"
    r"|turn on javascript|you need to enable javascript",
    re.IGNORECASE,
)

APP_SHELL_SELECTORS = ["#root", "#__next", "#app", "#__nuxt", "app-root"]

MIN_BODY_TEXT_LENGTH = 200


@dataclass
class Extraction:
    """Fields read from one HTML document plus hints for the pipeline."""

    product: ExtractedProduct
    price_text_found: bool = False  # A price element matched but did not parse
    rendering_required: bool = False
    sources: dict[str, str] = field(default_factory=dict)


def _iter_json_ld_objects(data: Any) -> Iterator[dict]:
    """Walk JSON-LD documents, descending into lists and @graph arrays."""
    if isinstance(data, list):
        for item in data:
            yield from _iter_json_ld_objects(item)
    elif isinstance(data, dict):
        yield data
        if "@graph" in data:
            yield from _iter_json_ld_objects(data["@graph"])


def _has_type(obj: dict, type_name: str) -> bool:
    types = obj.get("@type")
    if isinstance(types, list):
        return type_name in types
    return types == type_name


def _first_string(value: Any) -> Optional[str]:
    """First usable string in a JSON-LD value (string, list or ImageObject)."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, list):
        for item in value:
            found = _first_string(item)
            if found:
                return found
    if isinstance(value, dict):
        return _first_string(value.get("url") or value.get("contentUrl"))
    return None


def _valid_currency(code: Any) -> Optional[str]:
    if isinstance(code, str) and len(code.strip()) == 3 and code.strip().isalpha():
        return code.strip().upper()
    return None


class ProductExtractor:
    """Reads product fields from raw or rendered HTML."""

    def extract(self, html: str, base_url: str) -> Extraction:
        """
        Extract product data from an HTML document.

        Args:
            html: Page HTML
            base_url: Page URL, used to resolve relative image URLs

        Returns:
            Extraction with whatever fields were found
        """
        tree = HTMLParser(html or "")
        product = ExtractedProduct()
        extraction = Extraction(product=product)

        self._apply_json_ld(tree, extraction, base_url)
        self._apply_meta(tree, extraction, base_url)
        self._apply_selectors(tree, extraction, base_url)

        if product.has_price:
            extraction.price_text_found = False
        extraction.rendering_required = self.rendering_required(tree)

        logger.debug(
            f"Extraction for {base_url}: title={'found' if product.title else 'none'}, "
            f"price={product.price} {product.currency}, "
            f"image={'found' if product.image_url else 'none'}, sources={extraction.sources}"
        )
        return extraction

    def _apply_json_ld(self, tree: HTMLParser, extraction: Extraction, base_url: str) -> None:
        product = extraction.product
        for script in tree.css('script[type="application/ld+json"]'):
            try:
                data = json.loads(script.text())
            except (json.JSONDecodeError, TypeError):
                continue

            for obj in _iter_json_ld_objects(data):
                if not _has_type(obj, "Product"):
                    continue

                if not product.title:
                    name = _first_string(obj.get("name"))
                    if name:
                        product.title = name
                        extraction.sources["title"] = "json-ld"

                if not product.image_url:
                    image = resolve_image_url(_first_string(obj.get("image")), base_url)
                    if image:
                        product.image_url = image
                        extraction.sources["image"] = "json-ld"

                if not product.has_price:
                    parsed = self._price_from_offers(obj.get("offers"))
                    if parsed:
                        product.price = parsed.cents
                        product.currency = parsed.currency
                        extraction.sources["price"] = "json-ld"

    def _price_from_offers(self, offers: Any) -> Optional[ParsedPrice]:
        if isinstance(offers, list):
            for offer in offers:
                parsed = self._price_from_offers(offer)
                if parsed:
                    return parsed
            return None
        if not isinstance(offers, dict):
            return None

        raw_price = offers.get("price")
        if raw_price is None:
            raw_price = offers.get("lowPrice")
        if raw_price is None and isinstance(offers.get("priceSpecification"), dict):
            raw_price = offers["priceSpecification"].get("price")
        if raw_price is None:
            return None

        parsed = parse_price(str(raw_price))
        if not parsed:
            return None

        currency = _valid_currency(offers.get("priceCurrency"))
        if currency:
            return ParsedPrice(cents=parsed.cents, currency=currency)
        return parsed

    def _apply_meta(self, tree: HTMLParser, extraction: Extraction, base_url: str) -> None:
        product = extraction.product

        if not product.has_price:
            for selector in PRICE_META_SELECTORS:
                node = tree.css_first(selector)
                content = node.attributes.get("content") if node else None
                if not content:
                    continue
                parsed = parse_price(content)
                if parsed:
                    currency = self._meta_currency(tree)
                    product.price = parsed.cents
                    product.currency = currency or parsed.currency
                    extraction.sources["price"] = "meta"
                    break
                extraction.price_text_found = True

        if not product.title:
            node = tree.css_first('meta[property="og:title"]')
            content = node.attributes.get("content") if node else None
            if content and content.strip():
                product.title = content.strip()
                extraction.sources["title"] = "meta"

        if not product.image_url:
            node = tree.css_first('meta[property="og:image"]')
            image = resolve_image_url(node.attributes.get("content"), base_url) if node else None
            if image:
                product.image_url = image
                extraction.sources["image"] = "meta"

    def _meta_currency(self, tree: HTMLParser) -> Optional[str]:
        for selector in CURRENCY_META_SELECTORS:
            node = tree.css_first(selector)
            if node is None:
                continue
            currency = _valid_currency(node.attributes.get("content") or node.text(strip=True))
            if currency:
                return currency
        return None

    def _apply_selectors(self, tree: HTMLParser, extraction: Extraction, base_url: str) -> None:
        product = extraction.product

        if not product.title:
            for selector in TITLE_SELECTORS:
                node = tree.css_first(selector)
                if node is None:
                    continue
                text = " ".join(node.text(separator=" ").split())
                if text:
                    product.title = text
                    extraction.sources["title"] = selector
                    break

        if not product.has_price:
            for selector in PRICE_SELECTORS:
                node = tree.css_first(selector)
                if node is None:
                    continue
                text = self._price_text(node)
                if not text:
                    continue
                parsed = parse_price(text)
                if parsed:
                    product.price = parsed.cents
                    product.currency = parsed.currency
                    extraction.sources["price"] = selector
                    break
                extraction.price_text_found = True

        if not product.image_url:
            for selector in IMAGE_SELECTORS:
                node = tree.css_first(selector)
                if node is None:
                    continue
                image = resolve_image_url(self._image_source(node), base_url)
                if image:
                    product.image_url = image
                    extraction.sources["image"] = selector
                    break

    @staticmethod
    def _price_text(node: Node) -> Optional[str]:
        content = node.attributes.get("content")
        if content and content.strip():
            return content.strip()
        text = node.text(strip=True)
        return text or None

    @staticmethod
    def _image_source(node: Node) -> Optional[str]:
        for attribute in IMAGE_ATTRIBUTES:
            value = node.attributes.get(attribute)
            if value and value.strip():
                return value
        return None

    def rendering_required(self, tree: HTMLParser) -> bool:
        """
        Whether the document looks like a client-rendered shell.

        True for pages asking to enable JavaScript, near-empty bodies and
        empty single-page-app roots. Strips scripts and styles from ``tree``.
        """
        body = tree.body
        if body is None:
            return True

        for node in tree.css("script, style, noscript, template"):
            node.decompose()
        text = " ".join(body.text(separator=" ").split())

        if len(text) < 1000 and JS_REQUIRED_PATTERNS.search(text):
            return True

        if len(text) < MIN_BODY_TEXT_LENGTH:
            return True

        for selector in APP_SHELL_SELECTORS:
            root = tree.css_first(selector)
            if root is not None and not root.text(strip=True) and len(text) < 1000:
                return True

        return False


product_extractor = ProductExtractor()
