"""Multi-window price trend statistics for the digest.

For each active product: the latest price, its change against the previous
record, and its change against the mean price over the last 7/30/90/180
days. Everything for one product is read in a single SELECT so the "vs last
check" figure and the window means come from the same snapshot.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.db.models import PriceRecord, Product
from pricewatch.db.repository import get_active_products, get_product_by_id

logger = logging.getLogger(__name__)

TREND_WINDOWS_DAYS = (7, 30, 90, 180)

# A mean over a single record says nothing about a trend
MIN_WINDOW_RECORDS = 2


@dataclass
class WindowTrend:
    """Mean price over a trailing window and the current price's change against it."""

    days: int
    record_count: int
    average: Optional[int]  # cents
    change_pct: Optional[float]


@dataclass
class ProductTrend:
    """Trend summary for one product."""

    product_id: int
    name: str
    url: str
    image_url: Optional[str]
    current_price: Optional[int]
    currency: Optional[str]
    previous_price: Optional[int]
    vs_last_check: Optional[float]
    last_checked: Optional[datetime]
    last_failed: Optional[datetime]
    windows: dict[int, WindowTrend] = field(default_factory=dict)

    def average(self, days: int) -> Optional[int]:
        window = self.windows.get(days)
        return window.average if window else None

    def change_vs_average(self, days: int) -> Optional[float]:
        window = self.windows.get(days)
        return window.change_pct if window else None


def percentage_change(current: Optional[int], base: Optional[int]) -> Optional[float]:
    """Percentage change from ``base`` to ``current``; None when either is missing or base is 0."""
    if current is None or base is None or base == 0:
        return None
    return (current - base) / base * 100


def mean_cents(prices: list[int]) -> Optional[int]:
    """Mean of prices in cents, rounded half up to whole cents."""
    if not prices:
        return None
    mean = Decimal(sum(prices)) / Decimal(len(prices))
    return int(mean.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class TrendCalculator:
    """Computes ProductTrend rows from price history."""

    def __init__(self, windows: tuple[int, ...] = TREND_WINDOWS_DAYS):
        self.windows = windows

    async def _load_records(
        self, db: AsyncSession, product_id: int, now: datetime
    ) -> list[PriceRecord]:
        """
        Records inside the widest window plus the two most recent ones.

        One statement, newest first.
        """
        cutoff = now - timedelta(days=max(self.windows))
        latest_ids = (
            select(PriceRecord.id)
            .where(PriceRecord.product_id == product_id)
            .order_by(PriceRecord.captured_at.desc(), PriceRecord.id.desc())
            .limit(2)
        )
        result = await db.execute(
            select(PriceRecord)
            .where(
                PriceRecord.product_id == product_id,
                or_(PriceRecord.captured_at >= cutoff, PriceRecord.id.in_(latest_ids)),
            )
            .order_by(PriceRecord.captured_at.desc(), PriceRecord.id.desc())
        )
        return list(result.scalars().all())

    def build_trend(
        self, product: Product, records: list[PriceRecord], now: datetime
    ) -> ProductTrend:
        """
        Build a trend from a product's records (newest first).

        Args:
            product: The product
            records: Price records ordered newest first
            now: Reference time for the windows

        Returns:
            ProductTrend; price fields are None when there is no history
        """
        latest = records[0] if records else None
        previous = records[1] if len(records) > 1 else None
        current_price = latest.price if latest else None

        windows = {}
        for days in self.windows:
            cutoff = now - timedelta(days=days)
            prices = [r.price for r in records if r.captured_at >= cutoff]
            average = mean_cents(prices) if len(prices) >= MIN_WINDOW_RECORDS else None
            windows[days] = WindowTrend(
                days=days,
                record_count=len(prices),
                average=average,
                change_pct=percentage_change(current_price, average),
            )

        return ProductTrend(
            product_id=product.id,
            name=product.name or "Unknown Product",
            url=product.url,
            image_url=product.image_url,
            current_price=current_price,
            currency=latest.currency if latest else None,
            previous_price=previous.price if previous else None,
            vs_last_check=percentage_change(current_price, previous.price if previous else None),
            last_checked=product.last_success_at,
            last_failed=product.last_failed_at,
            windows=windows,
        )

    async def calculate_for_product(
        self, db: AsyncSession, product_id, now: Optional[datetime] = None
    ) -> Optional[ProductTrend]:
        """Trend for one product, or None if it does not exist."""
        product = await get_product_by_id(db, product_id)
        if product is None:
            logger.error(f"Product not found for trend calculation: {product_id}")
            return None
        now = now or datetime.utcnow()
        records = await self._load_records(db, product.id, now)
        return self.build_trend(product, records, now)

    async def calculate_all(
        self, db: AsyncSession, now: Optional[datetime] = None
    ) -> list[ProductTrend]:
        """Trends for every active product."""
        now = now or datetime.utcnow()
        products = await get_active_products(db)
        logger.info(f"Calculating trends for {len(products)} active products")

        trends = []
        for product in products:
            records = await self._load_records(db, product.id, now)
            trends.append(self.build_trend(product, records, now))
        return trends


trend_calculator = TrendCalculator()
