"""Parse locale-variant price text into integer cents and an ISO currency code."""

import logging
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional
from urllib.parse import urljoin, urlparse

logger = logging.getLogger(__name__)

# Currency symbols to ISO codes
CURRENCY_SYMBOLS = {
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
    "₹": "INR",
    "₽": "RUB",
    "₩": "KRW",
    "฿": "THB",
    "A$": "AUD",
    "C$": "CAD",
}

KNOWN_CURRENCY_CODES = sorted(set(CURRENCY_SYMBOLS.values()))

CURRENCY_CODE_PATTERN = re.compile(
    r"\b(" + "|".join(KNOWN_CURRENCY_CODES) + r")\b", re.IGNORECASE
)
NUMBER_PATTERN = re.compile(r"[\d.,]*\d[\d.,]*")

DEFAULT_CURRENCY = "USD"

BLOCKED_URL_SCHEMES = ("javascript:", "data:", "file:", "vbscript:", "about:")


@dataclass(frozen=True)
class ParsedPrice:
    """Price in minor units (cents) with its currency."""

    cents: int
    currency: str


def detect_currency(text: str) -> str:
    """
    Detect the currency of a price string.

    The symbol that appears first in the text wins; at the same position the
    longer symbol wins, so "A$" is not read as "$". An explicit ISO code
    anywhere in the text overrides the symbol.
    """
    currency = DEFAULT_CURRENCY
    best_position = None
    best_length = 0

    for symbol, code in CURRENCY_SYMBOLS.items():
        position = text.find(symbol)
        if position < 0:
            continue
        if (
            best_position is None
            or position < best_position
            or (position == best_position and len(symbol) > best_length)
        ):
            best_position = position
            best_length = len(symbol)
            currency = code

    code_match = CURRENCY_CODE_PATTERN.search(text)
    if code_match:
        currency = code_match.group(1).upper()

    return currency


def parse_price(text: Optional[str]) -> Optional[ParsedPrice]:
    """
    Parse price text into cents and currency.

    Handles "$19.99", "19,99 €", "£1,234.56" and "€1.234,56". When a comma
    follows the last period the comma is the decimal separator.

    Args:
        text: Raw price text

    Returns:
        ParsedPrice, or None for empty text, text without digits or an
        unparseable number
    """
    if not text:
        return None

    cleaned = text.strip()
    if not cleaned:
        return None

    currency = detect_currency(cleaned)

    number_match = NUMBER_PATTERN.search(cleaned)
    if not number_match:
        return None

    # Sentence punctuation around the number is not a separator
    number = number_match.group(0).strip(".,")

    last_comma = number.rfind(",")
    last_period = number.rfind(".")
    if last_comma > last_period:
        # European format: 1.234,56 -> 1234.56
        number = number.replace(".", "").replace(",", ".")
    else:
        number = number.replace(",", "")

    try:
        value = Decimal(number)
    except InvalidOperation:
        logger.debug(f"Unparseable price text: {text!r}")
        return None

    cents = int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return ParsedPrice(cents=cents, currency=currency)


def resolve_image_url(image_url: Optional[str], base_url: str) -> Optional[str]:
    """
    Resolve a possibly relative image URL against the page URL.

    Returns None for empty input, script-capable or local schemes, and any
    result that is not http(s).
    """
    if not image_url:
        return None

    trimmed = image_url.strip()
    if not trimmed:
        return None

    if trimmed.lower().startswith(BLOCKED_URL_SCHEMES):
        logger.warning(f"Blocked unsafe image URL: {trimmed[:100]}")
        return None

    if trimmed.startswith("//"):
        resolved = "https:" + trimmed
    elif trimmed.startswith(("http://", "https://")):
        resolved = trimmed
    else:
        try:
            base = urlparse(base_url)
        except ValueError:
            logger.warning(f"Invalid base URL for image: {base_url}")
            return None
        if base.scheme not in ("http", "https") or not base.netloc:
            logger.warning(f"Invalid base URL for image: {base_url}")
            return None
        try:
            resolved = urljoin(base_url, trimmed)
        except ValueError:
            logger.warning(f"Failed to resolve relative image URL: {trimmed[:100]}")
            return None

    if urlparse(resolved).scheme not in ("http", "https"):
        logger.warning(f"Resolved image URL has invalid scheme: {resolved[:100]}")
        return None

    return resolved
