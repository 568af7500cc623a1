"""LLM-based product extraction, the last tier of the scraper pipeline."""

import json
import logging
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

import openai
from openai import AsyncOpenAI
from selectolax.parser import HTMLParser

from pricewatch.config import settings
from pricewatch.ingest.base import ExtractedProduct, ScrapeError, ScrapeErrorCode
from pricewatch.normalize.price_parser import resolve_image_url

logger = logging.getLogger(__name__)

# Smaller main/article content is likely a fragment; fall back to the body
MIN_CONTENT_LENGTH = 3000

SYSTEM_PROMPT = (
    "You extract product information from e-commerce HTML. "
    "Respond with a single JSON object with keys: "
    '"title" (string or null), "price" (number or null, e.g. 19.99), '
    '"currency" (ISO 4217 code such as USD, EUR, GBP, or null), '
    '"imageUrl" (absolute https URL of the main product image, or null). '
    "Return only the JSON object."
)

EXTRACTION_PROMPT = """Extract product information from this HTML.
Find the product title, current price (as a number without currency symbol), currency code, and main product image URL.

Instructions:
- If there are multiple prices, extract the main/current/discounted selling price, not the original, unit or crossed-out price.
- For imageUrl, extract the main product image URL (look for <img> tags with src or data-src attributes).
- The imageUrl should be a complete URL starting with https://, not a relative path.

HTML content:
{html}"""


def prepare_html(html: str, max_chars: Optional[int] = None) -> str:
    """
    Reduce a page to the markup worth sending to the model.

    Removes scripts (JSON-LD is kept), styles, noscript blocks and iframes,
    narrows to ``<main>`` or ``<article>`` when they hold enough content,
    collapses whitespace and truncates.
    """
    max_chars = max_chars or settings.ai_max_html_chars
    tree = HTMLParser(html or "")

    for node in tree.css("script"):
        if (node.attributes.get("type") or "").lower() != "application/ld+json":
            node.decompose()
    for node in tree.css("style, noscript, iframe"):
        node.decompose()

    content = None
    for selector in ("main", "article"):
        node = tree.css_first(selector)
        if node is not None and node.html and len(node.html) >= MIN_CONTENT_LENGTH:
            content = node.html
            break

    if content is None:
        content = tree.body.html if tree.body is not None else tree.html
    content = re.sub(r"\s+", " ", content or "").strip()

    if len(content) > max_chars:
        content = content[:max_chars] + "... [truncated]"
    return content


def _price_to_cents(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).replace(",", ""))
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class AIExtractor:
    """Extracts product fields with an OpenAI chat model."""

    name = "ai"

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self._client = client
        self.model = model or settings.openai_model

    @property
    def enabled(self) -> bool:
        """Only used when an API key is configured (or a client injected)."""
        return self._client is not None or bool(settings.openai_api_key)

    async def _get_client(self) -> AsyncOpenAI:
        """Get or create OpenAI client."""
        if self._client is None:
            if not settings.openai_api_key:
                raise ValueError("OpenAI API key not configured")
            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.ai_timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def extract(self, url: str, html: str) -> ExtractedProduct:
        """
        Extract product data from (preferably rendered) HTML.

        Args:
            url: Page URL, used to resolve relative image URLs
            html: Page HTML

        Returns:
            ExtractedProduct, empty when the model found nothing

        Raises:
            ScrapeError: TIMEOUT or FETCH_ERROR for API failures, PARSE_ERROR
                when the response is not the expected JSON object
        """
        client = await self._get_client()
        prepared = prepare_html(html)
        logger.info(f"AI extraction for {url}: sending {len(prepared)} chars to {self.model}")

        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": EXTRACTION_PROMPT.format(html=prepared)},
                ],
                response_format={"type": "json_object"},
                temperature=0,
            )
        except openai.APITimeoutError as e:
            raise ScrapeError(ScrapeErrorCode.TIMEOUT, f"AI extraction timeout: {e}", strategy=self.name) from e
        except openai.OpenAIError as e:
            raise ScrapeError(ScrapeErrorCode.FETCH_ERROR, f"AI extraction error: {e}", strategy=self.name) from e

        content = response.choices[0].message.content or ""
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ScrapeError(
                ScrapeErrorCode.PARSE_ERROR, f"AI response is not JSON: {content[:200]}", strategy=self.name
            ) from e
        if not isinstance(data, dict):
            raise ScrapeError(ScrapeErrorCode.PARSE_ERROR, "AI response is not a JSON object", strategy=self.name)

        title = data.get("title")
        title = title.strip() if isinstance(title, str) and title.strip() else None
        price = _price_to_cents(data.get("price"))

        currency = data.get("currency")
        if isinstance(currency, str) and len(currency.strip()) == 3:
            currency = currency.strip().upper()
        else:
            currency = "USD" if price is not None else None

        image = data.get("imageUrl")
        image_url = resolve_image_url(image, url) if isinstance(image, str) else None

        logger.debug(f"AI extraction for {url}: title={title!r}, price={price} {currency}")
        return ExtractedProduct(title=title, price=price, currency=currency, image_url=image_url)
