"""Recurring digest trigger driven by the persisted email schedule."""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.config import settings
from pricewatch.db.repository import get_email_schedule
from pricewatch.worker.jobs import JobKind, SendDigestPayload
from pricewatch.worker.queue import JobQueue
from pricewatch.worker.schedule import build_cron_trigger, describe, to_trigger_pattern

logger = logging.getLogger(__name__)

DIGEST_JOB_ID = "email_digest"
POLL_JOB_ID = "email_schedule_poll"


class DigestScheduler:
    """
    Owns the recurring send-digest trigger.

    The schedule lives in the settings table and can change at any time
    through the API, so it is re-read every ``schedule_poll_interval_minutes``
    and the cron job is re-registered only when its pattern changed. Run
    this in one process only (ENABLE_SCHEDULER).
    """

    def __init__(
        self,
        queue: JobQueue,
        session_factory: async_sessionmaker[AsyncSession],
        scheduler: Optional[AsyncIOScheduler] = None,
        poll_interval_minutes: Optional[int] = None,
    ):
        self.queue = queue
        self.session_factory = session_factory
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.poll_interval_minutes = max(
            1, poll_interval_minutes or settings.schedule_poll_interval_minutes
        )
        self.current_pattern: Optional[str] = None

    async def start(self):
        """Register the digest trigger and the schedule poller, then start APScheduler."""
        await self.sync_schedule()
        self.scheduler.add_job(
            self.sync_schedule,
            IntervalTrigger(minutes=self.poll_interval_minutes),
            id=POLL_JOB_ID,
            name="Poll email schedule setting",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Digest scheduler started, polling schedule every {self.poll_interval_minutes} min")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Digest scheduler stopped")

    async def sync_schedule(self) -> Optional[str]:
        """
        Re-read the email schedule and re-register the digest trigger if it changed.

        Returns:
            The active trigger pattern
        """
        try:
            async with self.session_factory() as db:
                schedule = await get_email_schedule(db)
        except SQLAlchemyError as e:
            logger.error(f"Could not read email schedule, keeping current trigger: {e}")
            return self.current_pattern

        pattern = to_trigger_pattern(schedule)
        if pattern == self.current_pattern:
            return pattern

        trigger = build_cron_trigger(pattern, timezone="UTC")
        if self.scheduler.get_job(DIGEST_JOB_ID):
            self.scheduler.reschedule_job(DIGEST_JOB_ID, trigger=trigger)
        else:
            self.scheduler.add_job(
                self.enqueue_digest,
                trigger,
                id=DIGEST_JOB_ID,
                name="Send price digest",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=600,
                replace_existing=True,
            )
        previous = self.current_pattern
        self.current_pattern = pattern
        if previous is None:
            logger.info(f"Digest scheduled: {describe(pattern)} ({pattern})")
        else:
            logger.info(f"Digest schedule changed from {previous} to {pattern}: {describe(pattern)}")
        return pattern

    async def enqueue_digest(self) -> str:
        """Enqueue a scheduled send-digest job."""
        job_id = await self.queue.add(
            JobKind.SEND_DIGEST, SendDigestPayload(trigger_type="scheduled")
        )
        logger.info(f"Scheduled digest enqueued as job {job_id}")
        return job_id
