"""Health and manual trigger endpoints."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.api.deps import get_database, get_queue
from pricewatch.db.repository import get_product_by_id
from pricewatch.worker.jobs import CheckPricePayload, JobKind, SendDigestPayload
from pricewatch.worker.queue import JobQueue

logger = logging.getLogger(__name__)

router = APIRouter(tags=["triggers"])

VERSION = "0.1.0"


class CheckPriceRequest(BaseModel):
    """Request body for a manual price check: a URL, or a product id to look up."""

    model_config = ConfigDict(populate_by_name=True)

    url: Optional[str] = None
    product_id: Optional[str] = Field(default=None, alias="productId")

    @model_validator(mode="after")
    def check_target(self) -> "CheckPriceRequest":
        if not self.url and not self.product_id:
            raise ValueError("Either url or productId is required")
        return self


class EnqueuedResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    job_id: str = Field(alias="jobId")
    message: str


@router.get("/health")
async def health(request: Request, db: AsyncSession = Depends(get_database)):
    """Health check: database connectivity plus queue depth."""
    body = {"status": "ok", "version": VERSION, "timestamp": datetime.utcnow().isoformat()}
    try:
        await db.execute(text("SELECT 1"))
        queue: JobQueue = request.app.state.queue
        body["queue"] = await queue.get_counts()
    except (SQLAlchemyError, RedisError) as e:
        logger.error(f"Health check failed: {e}")
        body["status"] = "error"
        body["error"] = str(e)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)

    worker = getattr(request.app.state, "worker", None)
    body["worker_running"] = bool(worker and worker.running)
    return body


@router.post(
    "/api/digest/trigger",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=EnqueuedResponse,
    response_model_by_alias=True,
)
async def trigger_digest(queue: JobQueue = Depends(get_queue)):
    """Enqueue a manual send-digest job."""
    job_id = await queue.add(JobKind.SEND_DIGEST, SendDigestPayload(trigger_type="manual"))
    return EnqueuedResponse(job_id=job_id, message="Digest job enqueued successfully")


@router.post(
    "/api/check-price",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=EnqueuedResponse,
    response_model_by_alias=True,
)
async def trigger_check_price(
    body: CheckPriceRequest,
    db: AsyncSession = Depends(get_database),
    queue: JobQueue = Depends(get_queue),
):
    """
    Enqueue a check-price job.

    A productId is resolved to its URL here, so queued jobs always carry the URL.
    """
    url = body.url
    if not url:
        product = await get_product_by_id(db, body.product_id)
        if product is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
        url = product.url

    job_id = await queue.add(JobKind.CHECK_PRICE, CheckPricePayload(url=url))
    return EnqueuedResponse(job_id=job_id, message="Price check job enqueued")
