"""Scrape result types shared by all extraction strategies."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ScrapeErrorCode(str, Enum):
    """Typed failure reasons for a scrape."""

    FETCH_ERROR = "FETCH_ERROR"  # Network error or non-2xx response
    PARSE_ERROR = "PARSE_ERROR"  # Price element found but its text did not parse
    TIMEOUT = "TIMEOUT"  # Fetch or render exceeded its timeout
    NO_PRICE_FOUND = "NO_PRICE_FOUND"  # Page loaded but held no product data


RETRYABLE_ERROR_CODES = frozenset({ScrapeErrorCode.FETCH_ERROR, ScrapeErrorCode.TIMEOUT})


class ScrapeError(Exception):
    """A strategy failed to produce a page or an extraction."""

    def __init__(self, code: ScrapeErrorCode, message: str, strategy: Optional[str] = None):
        self.code = code
        self.message = message
        self.strategy = strategy
        super().__init__(f"{code.value}: {message}")

    @property
    def retryable(self) -> bool:
        """Transient failures are worth another attempt."""
        return self.code in RETRYABLE_ERROR_CODES


@dataclass
class ExtractedProduct:
    """Product fields read from one page. Price is in cents."""

    title: Optional[str] = None
    price: Optional[int] = None
    currency: Optional[str] = None
    image_url: Optional[str] = None

    @property
    def has_price(self) -> bool:
        return self.price is not None

    @property
    def is_empty(self) -> bool:
        return not self.title and self.price is None and not self.image_url

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "price": self.price,
            "currency": self.currency,
            "image_url": self.image_url,
        }


@dataclass
class ScrapeResult:
    """
    Outcome of running the strategy chain for one URL.

    Either ``success`` with ``data`` (price and currency may be None for a
    title-only extraction), or a failure with ``error`` and ``error_code``.
    """

    success: bool
    method: str
    data: Optional[ExtractedProduct] = None
    error: Optional[str] = None
    error_code: Optional[ScrapeErrorCode] = None

    @classmethod
    def ok(cls, data: ExtractedProduct, method: str) -> "ScrapeResult":
        return cls(success=True, method=method, data=data)

    @classmethod
    def failure(cls, error_code: ScrapeErrorCode, error: str, method: str) -> "ScrapeResult":
        return cls(success=False, method=method, error=error, error_code=error_code)

    @property
    def has_price(self) -> bool:
        return self.success and self.data is not None and self.data.has_price

    @property
    def retryable(self) -> bool:
        return not self.success and self.error_code in RETRYABLE_ERROR_CODES

    def to_dict(self) -> dict[str, Any]:
        """Serializable form, stored as a job's terminal value."""
        if self.success:
            return {
                "success": True,
                "data": self.data.to_dict() if self.data else None,
                "method": self.method,
            }
        return {
            "success": False,
            "error": self.error,
            "error_code": self.error_code.value if self.error_code else None,
            "method": self.method,
        }
