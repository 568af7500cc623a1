"""Job dispatch and the asyncio worker pool."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Mapping, Optional

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.logging_config import get_logger
from pricewatch.worker.jobs import (
    Job,
    JobKind,
    JobPayload,
    RetryableJobError,
    UnrecoverableJobError,
    parse_payload,
)
from pricewatch.worker.queue import JobQueue

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job, JobPayload], Awaitable[Any]]
FailureHook = Callable[[Job, str], Awaitable[None]]


class Dispatcher:
    """Routes each job to the handler registered for its kind."""

    def __init__(
        self,
        handlers: Mapping[JobKind, JobHandler],
        failure_hooks: Optional[Mapping[JobKind, FailureHook]] = None,
    ):
        missing = [kind.value for kind in JobKind if kind not in handlers]
        if missing:
            raise ValueError(f"No handler registered for job kinds: {', '.join(missing)}")
        self.handlers = dict(handlers)
        self.failure_hooks = dict(failure_hooks or {})

    async def dispatch(self, job: Job) -> Any:
        """
        Validate the job payload and run its handler.

        Raises:
            UnrecoverableJobError: Unknown kind or invalid payload
        """
        payload = parse_payload(job.kind, job.data)
        handler = self.handlers[JobKind(job.kind)]
        return await handler(job, payload)

    async def on_final_failure(self, job: Job, error: str) -> None:
        """
        Run the failure hook for a job that is about to settle as failed.

        Hook errors are logged and never prevent the job from settling.
        """
        try:
            hook = self.failure_hooks.get(JobKind(job.kind))
        except ValueError:
            return
        if hook is None:
            return
        try:
            await hook(job, error)
        except Exception as e:
            logger.error(f"Failure hook for {job.kind} job {job.id} raised: {e}", exc_info=True)


class Worker:
    """
    Pulls jobs from the queue and runs them on a bounded number of loops.

    Each loop blocks on the queue, runs one job under ``job_timeout`` and
    settles it: completed on return, failed on UnrecoverableJobError or when
    attempts are exhausted, otherwise moved to the delayed set for a backoff
    retry. The dispatcher's failure hook runs before a job settles as
    failed. A maintenance loop promotes due retries and recovers stalled jobs.
    """

    def __init__(
        self,
        queue: JobQueue,
        dispatcher: Dispatcher,
        concurrency: Optional[int] = None,
        job_timeout: Optional[float] = None,
    ):
        self.queue = queue
        self.dispatcher = dispatcher
        self.concurrency = concurrency or settings.worker_concurrency
        self.job_timeout = job_timeout or settings.job_timeout_seconds
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self._last_stalled_check: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start consumer loops and the maintenance loop."""
        if self._running:
            return
        self._running = True
        for index in range(self.concurrency):
            self._tasks.append(asyncio.create_task(self._consume(index), name=f"worker-{index}"))
        self._tasks.append(asyncio.create_task(self._maintain(), name="worker-maintenance"))
        logger.info(f"Worker started with concurrency {self.concurrency} on queue {self.queue.name}")

    async def stop(self):
        """Cancel all loops. Jobs cut off mid-run are recovered by the stalled sweep."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Worker stopped")

    async def _consume(self, index: int):
        while self._running:
            try:
                await self.process_next(timeout=settings.queue_fetch_timeout_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Redis unavailable or similar; back off before polling again
                logger.error(f"Worker loop {index} error: {e}", exc_info=True)
                await asyncio.sleep(1)

    async def _maintain(self):
        while self._running:
            try:
                await self.run_maintenance()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Queue maintenance error: {e}", exc_info=True)
            await asyncio.sleep(min(settings.stalled_check_interval_seconds, 1.0))

    async def run_maintenance(self) -> dict[str, int]:
        """Promote due retries and, at most once per stalled-check interval, recover stalled jobs."""
        promoted = await self.queue.promote_delayed()
        recovered = []
        now = time.monotonic()
        interval = settings.stalled_check_interval_seconds
        if self._last_stalled_check is None or now - self._last_stalled_check >= interval:
            self._last_stalled_check = now
            recovered = await self.queue.recover_stalled(
                on_exhausted=self.dispatcher.on_final_failure
            )
        if promoted:
            logger.debug(f"Promoted {promoted} delayed jobs")
        return {"promoted": promoted, "recovered": len(recovered)}

    async def process_next(self, timeout: float = 0) -> Optional[Job]:
        """
        Fetch and run one job.

        Args:
            timeout: Seconds to block waiting for a job

        Returns:
            The job that was processed, or None if the queue was empty
        """
        job = await self.queue.fetch(timeout=timeout)
        if job is None:
            return None
        await self._run_job(job)
        return job

    async def run_until_idle(self, max_jobs: int = 1000) -> int:
        """Process jobs until none are waiting or due. Returns the number processed."""
        processed = 0
        while processed < max_jobs:
            await self.queue.promote_delayed()
            job = await self.process_next(timeout=0)
            if job is None:
                break
            processed += 1
        return processed

    async def _run_job(self, job: Job):
        log = get_logger(__name__, job_id=job.id, kind=job.kind)
        attempt = job.attempts_made + 1
        log.info(f"Running {job.kind} job {job.id} (attempt {attempt}/{job.max_attempts})")
        start = time.monotonic()

        try:
            result = await asyncio.wait_for(self.dispatcher.dispatch(job), timeout=self.job_timeout)
        except UnrecoverableJobError as e:
            await self.dispatcher.on_final_failure(job, str(e))
            await self.queue.fail(job, str(e))
            metrics.record_job(job.kind, "failed", time.monotonic() - start)
            return
        except asyncio.TimeoutError:
            await self._handle_failure(job, f"Job timed out after {self.job_timeout:.0f}s", start)
            return
        except RetryableJobError as e:
            await self._handle_failure(job, str(e), start)
            return
        except Exception as e:
            log.error(f"Unhandled error in {job.kind} job {job.id}: {e}", exc_info=True)
            await self._handle_failure(job, f"{type(e).__name__}: {e}", start)
            return

        duration = time.monotonic() - start
        await self.queue.complete(job, result)
        metrics.record_job(job.kind, "completed", duration)
        log.info(f"Completed {job.kind} job {job.id} in {duration:.2f}s")

    async def _handle_failure(self, job: Job, error: str, start: float):
        duration = time.monotonic() - start
        if job.is_final_attempt:
            await self.dispatcher.on_final_failure(job, error)
            await self.queue.fail(job, error)
            metrics.record_job(job.kind, "failed", duration)
        else:
            await self.queue.retry(job, error)
            metrics.record_job(job.kind, "retried", duration)
