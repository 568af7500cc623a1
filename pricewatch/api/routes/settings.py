"""Email schedule setting endpoints."""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.api.deps import get_database
from pricewatch.db.repository import get_email_schedule, set_email_schedule
from pricewatch.worker.schedule import (
    EmailSchedule,
    ScheduleValidationError,
    describe,
    to_trigger_pattern,
    validate_schedule,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["settings"])


def _schedule_response(schedule: EmailSchedule) -> dict[str, Any]:
    pattern = to_trigger_pattern(schedule)
    return {
        "success": True,
        "schedule": schedule.model_dump(by_alias=True, exclude_none=True),
        "pattern": pattern,
        "description": describe(pattern),
    }


@router.get("/email-schedule")
async def read_email_schedule(db: AsyncSession = Depends(get_database)):
    """Current schedule; falls back to daily at 09:00 when unset or unreadable."""
    schedule = await get_email_schedule(db)
    return _schedule_response(schedule)


@router.put("/email-schedule")
async def update_email_schedule(
    request: Request,
    payload: dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_database),
):
    """
    Validate and store the email schedule.

    Invalid values are rejected with 422, never clamped.
    """
    try:
        schedule = validate_schedule(payload)
    except ScheduleValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    await set_email_schedule(db, schedule)
    logger.info(f"Email schedule updated: {schedule.to_json()}")

    # Apply right away in the process that owns the trigger; others pick it up on poll
    digest_scheduler = getattr(request.app.state, "digest_scheduler", None)
    if digest_scheduler is not None:
        await digest_scheduler.sync_schedule()

    return _schedule_response(schedule)
