"""Tests for the recurring digest trigger."""

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from pricewatch.db.repository import set_email_schedule
from pricewatch.worker.jobs import JobKind
from pricewatch.worker.schedule import EmailSchedule
from pricewatch.worker.scheduler import DIGEST_JOB_ID, DigestScheduler


def _fields(job) -> dict[str, str]:
    return {f.name: str(f) for f in job.trigger.fields}


@pytest.mark.asyncio
async def test_registers_default_schedule(queue, session_factory):
    scheduler = DigestScheduler(queue, session_factory, scheduler=AsyncIOScheduler(timezone="UTC"))

    assert await scheduler.sync_schedule() == "0 9 * * *"

    fields = _fields(scheduler.scheduler.get_job(DIGEST_JOB_ID))
    assert (fields["hour"], fields["minute"], fields["day_of_week"]) == ("9", "0", "*")


@pytest.mark.asyncio
async def test_reregisters_when_setting_changes(queue, session_factory, db_session):
    scheduler = DigestScheduler(queue, session_factory, scheduler=AsyncIOScheduler(timezone="UTC"))
    await scheduler.sync_schedule()

    await set_email_schedule(db_session, EmailSchedule(frequency="weekly", hour=18, day_of_week=5))
    assert await scheduler.sync_schedule() == "0 18 * * 5"

    fields = _fields(scheduler.scheduler.get_job(DIGEST_JOB_ID))
    assert (fields["hour"], fields["day_of_week"]) == ("18", "fri")
    assert scheduler.current_pattern == "0 18 * * 5"


@pytest.mark.asyncio
async def test_enqueue_digest_is_scheduled_trigger(queue, session_factory):
    scheduler = DigestScheduler(queue, session_factory, scheduler=AsyncIOScheduler(timezone="UTC"))

    job_id = await scheduler.enqueue_digest()

    job = await queue.get_job(job_id)
    assert job.kind == JobKind.SEND_DIGEST.value
    assert job.data["triggerType"] == "scheduled"
