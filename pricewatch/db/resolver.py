"""URL-first product resolution (get-or-create)."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.db.models import PRODUCT_NAME_PLACEHOLDER, Product

logger = logging.getLogger(__name__)


def dialect_insert(db: AsyncSession, table):
    """Return an INSERT construct supporting ON CONFLICT for the session's dialect."""
    dialect_name = db.bind.dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    if dialect_name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"ON CONFLICT inserts are not supported for {dialect_name}")


class ProductResolver:
    """
    Resolves a product URL to exactly one Product row.

    The unique constraint on ``products.url`` is the only coordination
    between concurrent resolvers: the insert is ``ON CONFLICT DO NOTHING``
    and every caller re-reads the row by URL afterwards, so a lost race
    returns the winner's row instead of raising.
    """

    async def find_by_url(self, db: AsyncSession, url: str) -> Optional[Product]:
        result = await db.execute(select(Product).where(Product.url == url))
        return result.scalar_one_or_none()

    async def resolve(
        self,
        db: AsyncSession,
        url: str,
        fallback_name: Optional[str] = None,
    ) -> Product:
        """
        Get or create the product for a URL.

        Args:
            db: Database session (committed by this call when a row is inserted)
            url: Product page URL, the natural key
            fallback_name: Name used only when the product is created

        Returns:
            The existing product unchanged, or the newly created one
        """
        product = await self.find_by_url(db, url)
        if product is not None:
            return product

        stmt = (
            dialect_insert(db, Product)
            .values(
                url=url,
                name=fallback_name or PRODUCT_NAME_PLACEHOLDER,
                active=True,
            )
            .on_conflict_do_nothing(index_elements=[Product.url])
        )
        result = await db.execute(stmt)
        await db.commit()

        if result.rowcount == 0:
            logger.info(f"Product for {url} was created concurrently, using existing row")

        product = await self.find_by_url(db, url)
        if product is None:
            # Conflict reported but the row is gone (deleted in between)
            raise LookupError(f"Product for {url} vanished after insert conflict")

        logger.info(f"Product ready for URL: {url} (ID: {product.id})")
        return product


product_resolver = ProductResolver()
