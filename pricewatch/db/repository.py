"""Persistence operations used by job handlers."""

import json
import logging
from datetime import datetime
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.db.models import PRODUCT_NAME_PLACEHOLDER, PriceRecord, Product, RunLog, Setting
from pricewatch.db.resolver import dialect_insert
from pricewatch.worker.schedule import DEFAULT_EMAIL_SCHEDULE, EmailSchedule

logger = logging.getLogger(__name__)

EMAIL_SCHEDULE_KEY = "email_schedule"


async def get_product_by_id(db: AsyncSession, product_id) -> Optional[Product]:
    """
    Get a product by ID.

    Returns None when the id is not a valid integer or no row exists.
    """
    try:
        pk = int(product_id)
    except (TypeError, ValueError):
        logger.info(f"Invalid product id: {product_id!r}")
        return None
    return await db.get(Product, pk)


async def get_active_products(db: AsyncSession) -> list[Product]:
    """Active products in creation order."""
    result = await db.execute(
        select(Product).where(Product.active.is_(True)).order_by(Product.id)
    )
    return list(result.scalars().all())


async def save_price_record(
    db: AsyncSession,
    product_id: int,
    price: int,
    currency: str,
    captured_at: Optional[datetime] = None,
) -> PriceRecord:
    """Append a price observation (cents) for a product."""
    if price < 0:
        raise ValueError(f"Price must be non-negative, got {price}")
    record = PriceRecord(
        product_id=product_id,
        price=price,
        currency=currency.upper(),
        captured_at=captured_at or datetime.utcnow(),
    )
    db.add(record)
    await db.flush()
    return record


async def mark_product_success(db: AsyncSession, product_id: int) -> None:
    now = datetime.utcnow()
    await db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(last_success_at=now, updated_at=now)
    )


async def mark_product_failure(db: AsyncSession, product_id: int) -> None:
    now = datetime.utcnow()
    await db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(last_failed_at=now, updated_at=now)
    )


async def fill_missing_details(
    db: AsyncSession,
    product: Product,
    title: Optional[str],
    image_url: Optional[str],
) -> None:
    """Fill name and image from an extraction without overwriting user-provided values."""
    changed = False
    if title and (not product.name or product.name == PRODUCT_NAME_PLACEHOLDER):
        product.name = title
        changed = True
    if image_url and not product.image_url:
        product.image_url = image_url
        changed = True
    if changed:
        product.updated_at = datetime.utcnow()
        await db.flush()


async def log_run(
    db: AsyncSession,
    product_id: Optional[int],
    status: str,
    error_message: Optional[str] = None,
) -> None:
    """
    Append a run log row.

    Run logging is best-effort: failures are logged and swallowed so they
    never mask the outcome of the extraction itself.
    """
    try:
        db.add(
            RunLog(
                product_id=product_id,
                status=status,
                error_message=error_message[:2000] if error_message else None,
            )
        )
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.warning(f"Could not log run for product {product_id}: {e}")


async def get_setting(db: AsyncSession, key: str) -> Optional[str]:
    result = await db.execute(select(Setting.value).where(Setting.key == key))
    return result.scalar_one_or_none()


async def set_setting(db: AsyncSession, key: str, value: str) -> None:
    """Upsert a setting by key. Concurrent writers: last write wins."""
    now = datetime.utcnow()
    stmt = dialect_insert(db, Setting).values(key=key, value=value, updated_at=now)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Setting.key],
        set_={"value": value, "updated_at": now},
    )
    await db.execute(stmt)
    await db.commit()


async def get_email_schedule(db: AsyncSession) -> EmailSchedule:
    """
    Read the persisted email schedule.

    Missing, corrupt or invalid values fall back to the default (daily at
    09:00) instead of failing the read.
    """
    value = await get_setting(db, EMAIL_SCHEDULE_KEY)
    if not value:
        return DEFAULT_EMAIL_SCHEDULE

    try:
        return EmailSchedule.model_validate(json.loads(value))
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        logger.error(f"Failed to parse {EMAIL_SCHEDULE_KEY} setting, using default: {e}")
        return DEFAULT_EMAIL_SCHEDULE


async def set_email_schedule(db: AsyncSession, schedule: EmailSchedule) -> None:
    await set_setting(db, EMAIL_SCHEDULE_KEY, schedule.to_json())
