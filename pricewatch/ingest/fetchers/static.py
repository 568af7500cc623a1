"""Static HTML fetcher for server-rendered product pages."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from pricewatch.config import settings
from pricewatch.ingest.base import ScrapeError, ScrapeErrorCode

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_HEADERS = {
    "User-Agent": DEFAULT_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Upgrade-Insecure-Requests": "1",
}


@dataclass
class FetchedPage:
    """HTML body of a fetched page."""

    url: str  # Final URL after redirects
    html: str
    status_code: int


class StaticFetcher:
    """Fetches raw HTML over HTTP with browser-like headers."""

    name = "static"

    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize static fetcher.

        Args:
            timeout: Request timeout in seconds (defaults to settings.html_fetch_timeout)
            transport: Optional httpx transport, used by tests to stub responses
        """
        self.timeout = timeout if timeout is not None else settings.html_fetch_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers=DEFAULT_HEADERS,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str) -> FetchedPage:
        """
        Fetch a page.

        Args:
            url: Product page URL

        Returns:
            FetchedPage with the response body

        Raises:
            ScrapeError: TIMEOUT when the request times out, FETCH_ERROR for
                network errors and non-2xx responses
        """
        client = await self._get_client()

        try:
            response = await client.get(url)
        except httpx.TimeoutException as e:
            raise ScrapeError(
                ScrapeErrorCode.TIMEOUT,
                f"Request timeout after {self.timeout}s",
                strategy=self.name,
            ) from e
        except httpx.HTTPError as e:
            raise ScrapeError(ScrapeErrorCode.FETCH_ERROR, str(e) or type(e).__name__, strategy=self.name) from e

        if not response.is_success:
            raise ScrapeError(
                ScrapeErrorCode.FETCH_ERROR,
                f"HTTP {response.status_code}: {response.reason_phrase}",
                strategy=self.name,
            )

        logger.debug(f"Fetched {url} ({response.status_code}, {len(response.text)} chars)")
        return FetchedPage(url=str(response.url), html=response.text, status_code=response.status_code)
