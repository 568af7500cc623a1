"""Fallback chain of extraction strategies with typed outcomes."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.ingest.base import ExtractedProduct, ScrapeError, ScrapeErrorCode, ScrapeResult
from pricewatch.ingest.extractor import ProductExtractor, product_extractor
from pricewatch.ingest.fetchers.ai import AIExtractor
from pricewatch.ingest.fetchers.headless import HeadlessRenderer
from pricewatch.ingest.fetchers.static import StaticFetcher

logger = logging.getLogger(__name__)


class ScrapeStrategy(str, Enum):
    """Extraction strategies, cheapest first."""

    STATIC = "static"
    HEADLESS = "headless"
    AI = "ai"


@dataclass
class StrategyStats:
    """Per-strategy success/failure counters for this process."""

    attempts: int = 0
    successes: int = 0
    failures: int = 0


@dataclass
class _ChainState:
    """What the chain has learned about one URL so far."""

    html: Optional[str] = None
    partial: Optional[ExtractedProduct] = None
    partial_method: Optional[str] = None
    price_text_found: bool = False
    rendering_required: bool = False
    errors: list[ScrapeError] = field(default_factory=list)


class ScraperPipeline:
    """
    Runs extraction strategies in order until one yields a price.

    1. static: plain HTTP fetch plus HTML extraction
    2. headless: rendered DOM plus the same extraction
    3. ai: LLM extraction over the best HTML seen (only when configured)

    The first result with a price wins. A title without a price is kept as a
    partial success; otherwise the failure is classified from the errors
    seen along the way.
    """

    def __init__(
        self,
        static_fetcher: Optional[StaticFetcher] = None,
        headless_renderer: Optional[HeadlessRenderer] = None,
        ai_extractor: Optional[AIExtractor] = None,
        extractor: Optional[ProductExtractor] = None,
        strategy_order: Optional[list[str]] = None,
    ):
        self.static_fetcher = static_fetcher or StaticFetcher()
        self.headless_renderer = headless_renderer or HeadlessRenderer()
        self.ai_extractor = ai_extractor or AIExtractor()
        self.extractor = extractor or product_extractor
        self.strategy_order = [
            ScrapeStrategy(name) for name in (strategy_order or settings.fallback_strategy_order)
        ]
        self.stats: dict[str, StrategyStats] = {s.value: StrategyStats() for s in ScrapeStrategy}

    async def close(self):
        """Release pooled HTTP, browser and API clients."""
        await self.static_fetcher.close()
        await self.headless_renderer.close()
        await self.ai_extractor.close()

    def get_stats(self) -> dict[str, dict[str, int]]:
        return {
            name: {"attempts": s.attempts, "successes": s.successes, "failures": s.failures}
            for name, s in self.stats.items()
        }

    async def extract(self, url: str) -> ScrapeResult:
        """
        Extract product data from a URL.

        Args:
            url: Product page URL

        Returns:
            ScrapeResult; never raises for fetch or extraction problems
        """
        state = _ChainState()
        last_method = self.strategy_order[0].value if self.strategy_order else ScrapeStrategy.STATIC.value

        for strategy in self.strategy_order:
            if strategy == ScrapeStrategy.AI and not self.ai_extractor.enabled:
                logger.debug("AI extraction not configured, skipping")
                continue
            if strategy == ScrapeStrategy.AI and state.html is None:
                logger.debug(f"No HTML available for AI extraction of {url}, skipping")
                continue

            last_method = strategy.value
            stats = self.stats[strategy.value]
            stats.attempts += 1
            metrics.record_strategy_attempt(strategy.value)

            try:
                product = await self._run_strategy(strategy, url, state)
            except ScrapeError as e:
                stats.failures += 1
                state.errors.append(e)
                logger.info(f"Strategy {strategy.value} failed for {url}: {e}")
                continue

            if product.has_price:
                stats.successes += 1
                metrics.record_strategy_success(strategy.value)
                logger.info(
                    f"Extracted {url} via {strategy.value}: {product.price} {product.currency}"
                )
                return ScrapeResult.ok(product, strategy.value)

            stats.failures += 1
            if product.title and state.partial is None:
                state.partial = product
                state.partial_method = strategy.value
            logger.info(f"Strategy {strategy.value} found no price for {url}")

        if state.partial is not None:
            logger.info(f"Partial extraction for {url} via {state.partial_method}: title only")
            return ScrapeResult.ok(state.partial, state.partial_method)

        code = self._classify_failure(state)
        message = self._failure_message(code, state)
        metrics.record_scrape_failure(code.value)
        logger.warning(f"All strategies failed for {url}: {code.value} ({message})")
        return ScrapeResult.failure(code, message, last_method)

    async def _run_strategy(
        self, strategy: ScrapeStrategy, url: str, state: _ChainState
    ) -> ExtractedProduct:
        if strategy == ScrapeStrategy.STATIC:
            page = await self.static_fetcher.fetch(url)
            state.html = page.html
            return self._extract_html(page.html, url, state)

        if strategy == ScrapeStrategy.HEADLESS:
            html = await self.headless_renderer.render(url)
            state.html = html
            return self._extract_html(html, url, state)

        return await self.ai_extractor.extract(url, state.html)

    def _extract_html(self, html: str, url: str, state: _ChainState) -> ExtractedProduct:
        extraction = self.extractor.extract(html, url)
        if extraction.price_text_found:
            state.price_text_found = True
        if extraction.rendering_required:
            state.rendering_required = True
            logger.debug(f"{url} appears to require client-side rendering")
        return extraction.product

    @staticmethod
    def _classify_failure(state: _ChainState) -> ScrapeErrorCode:
        codes = {e.code for e in state.errors}
        if ScrapeErrorCode.TIMEOUT in codes:
            return ScrapeErrorCode.TIMEOUT
        if ScrapeErrorCode.FETCH_ERROR in codes:
            return ScrapeErrorCode.FETCH_ERROR
        if state.price_text_found or ScrapeErrorCode.PARSE_ERROR in codes:
            return ScrapeErrorCode.PARSE_ERROR
        return ScrapeErrorCode.NO_PRICE_FOUND

    @staticmethod
    def _failure_message(code: ScrapeErrorCode, state: _ChainState) -> str:
        for error in state.errors:
            if error.code == code:
                return f"{error.strategy}: {error.message}"
        if code == ScrapeErrorCode.PARSE_ERROR:
            return "Price element found but its text could not be parsed"
        if state.rendering_required:
            return "No price found (page requires client-side rendering)"
        return "No price found on page"
