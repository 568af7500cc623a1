"""Headless browser renderer for JavaScript-rendered product pages."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from playwright.async_api import Browser, Error as PlaywrightError, Page, async_playwright
from playwright.async_api import Route, TimeoutError as PlaywrightTimeoutError

from pricewatch.config import settings
from pricewatch.ingest.base import ScrapeError, ScrapeErrorCode
from pricewatch.ingest.fetchers.static import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)

# Image URLs are read from DOM attributes, so binaries are never needed
BLOCKED_RESOURCE_TYPES = {
    "image",
    "font",
    "media",
    "stylesheet",
    "websocket",
    "manifest",
    "other",
}

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]


@dataclass
class DOMStabilityConfig:
    """Thresholds for deciding that a rendered page has settled."""

    max_wait_ms: int
    quiet_window_ms: int
    check_interval_ms: int
    html_delta_threshold: int

    @classmethod
    def from_settings(cls) -> "DOMStabilityConfig":
        return cls(
            max_wait_ms=settings.headless_max_wait_ms,
            quiet_window_ms=settings.headless_quiet_window_ms,
            check_interval_ms=settings.headless_check_interval_ms,
            html_delta_threshold=settings.headless_html_delta_threshold,
        )


async def wait_for_dom_stability(page: Page, config: DOMStabilityConfig) -> bool:
    """
    Wait until the page HTML stops changing.

    The DOM counts as stable once its size changes by no more than
    ``html_delta_threshold`` characters for ``quiet_window_ms``. Gives up
    after ``max_wait_ms`` and proceeds with whatever has rendered.

    Returns:
        True if the page settled, False if the wait timed out
    """
    start = time.monotonic()
    last_size = 0
    stable_since: Optional[float] = None

    while (time.monotonic() - start) * 1000 < config.max_wait_ms:
        size = len(await page.content())

        if abs(size - last_size) <= config.html_delta_threshold:
            if stable_since is None:
                stable_since = time.monotonic()
            elif (time.monotonic() - stable_since) * 1000 >= config.quiet_window_ms:
                logger.debug(
                    f"DOM stable after {int((time.monotonic() - start) * 1000)}ms ({size} chars)"
                )
                return True
        else:
            stable_since = None

        last_size = size
        await asyncio.sleep(config.check_interval_ms / 1000)

    logger.debug(f"DOM did not stabilize within {config.max_wait_ms}ms, using current content")
    return False


async def _block_heavy_resources(route: Route):
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


class HeadlessRenderer:
    """Renders pages in a shared headless Chromium instance."""

    name = "headless"

    def __init__(
        self,
        navigation_timeout: Optional[int] = None,
        stability: Optional[DOMStabilityConfig] = None,
    ):
        """
        Initialize headless renderer.

        Args:
            navigation_timeout: Navigation timeout in milliseconds
            stability: DOM stability thresholds (defaults from settings)
        """
        self.navigation_timeout = navigation_timeout or settings.headless_timeout
        self.stability = stability or DOMStabilityConfig.from_settings()
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._init_lock = asyncio.Lock()

    async def _ensure_browser(self) -> Browser:
        """Launch the browser on first use."""
        async with self._init_lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            if self._browser is None or not self._browser.is_connected():
                logger.info("Launching headless browser")
                self._browser = await self._playwright.chromium.launch(
                    headless=True,
                    args=LAUNCH_ARGS,
                )
            return self._browser

    async def close(self):
        """Close browser and cleanup."""
        if self._browser:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.error(f"Error closing browser: {e}")
            self._browser = None

        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

    async def render(self, url: str) -> str:
        """
        Render a page and return its HTML once the DOM settles.

        Raises:
            ScrapeError: TIMEOUT if navigation times out, FETCH_ERROR for any
                other browser or navigation failure
        """
        try:
            browser = await self._ensure_browser()
        except PlaywrightError as e:
            raise ScrapeError(
                ScrapeErrorCode.FETCH_ERROR, f"Browser launch failed: {e}", strategy=self.name
            ) from e

        context = None
        try:
            context = await browser.new_context(
                user_agent=DEFAULT_USER_AGENT,
                viewport={"width": 1280, "height": 720},
            )
            page = await context.new_page()
            await page.route("**/*", _block_heavy_resources)

            logger.debug(f"Navigating to {url}")
            response = await page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=self.navigation_timeout,
            )
            if response is not None and response.status >= 400:
                raise ScrapeError(
                    ScrapeErrorCode.FETCH_ERROR,
                    f"HTTP {response.status} from rendered navigation",
                    strategy=self.name,
                )

            await wait_for_dom_stability(page, self.stability)
            html = await page.content()
            logger.debug(f"Rendered {url} ({len(html)} chars)")
            return html

        except PlaywrightTimeoutError as e:
            raise ScrapeError(
                ScrapeErrorCode.TIMEOUT,
                f"Navigation timeout after {self.navigation_timeout}ms",
                strategy=self.name,
            ) from e
        except PlaywrightError as e:
            raise ScrapeError(ScrapeErrorCode.FETCH_ERROR, str(e), strategy=self.name) from e
        finally:
            if context is not None:
                await context.close()
