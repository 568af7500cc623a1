"""Job handlers: price checks, digest flow submission and digest completion."""

import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch import metrics
from pricewatch.db.repository import (
    fill_missing_details,
    get_active_products,
    get_product_by_id,
    log_run,
    mark_product_failure,
    mark_product_success,
    save_price_record,
)
from pricewatch.db.resolver import ProductResolver, product_resolver
from pricewatch.detect.trends import TrendCalculator, trend_calculator
from pricewatch.ingest.base import ScrapeResult
from pricewatch.ingest.pipeline import ScraperPipeline
from pricewatch.logging_config import get_logger
from pricewatch.notify.digest import DigestDispatcher
from pricewatch.worker.dispatcher import FailureHook, JobHandler
from pricewatch.worker.flows import FlowOrchestrator
from pricewatch.worker.jobs import (
    CheckPricePayload,
    DigestFlowPayload,
    Job,
    JobKind,
    RetryableJobError,
    SendDigestPayload,
    UnrecoverableJobError,
    parse_payload,
)
from pricewatch.worker.queue import JobQueue

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"


class JobHandlers:
    """
    Handlers for every job kind.

    - check-price: scrape one URL, resolve its product and persist the price
    - send-digest: submit a digest flow over all active products
    - digest-flow: runs once per flow after every check settled; computes
      trends and sends the digest email
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        pipeline: ScraperPipeline,
        orchestrator: FlowOrchestrator,
        digest_dispatcher: DigestDispatcher,
        resolver: Optional[ProductResolver] = None,
        calculator: Optional[TrendCalculator] = None,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.pipeline = pipeline
        self.orchestrator = orchestrator
        self.digest_dispatcher = digest_dispatcher
        self.resolver = resolver or product_resolver
        self.calculator = calculator or trend_calculator

    def handlers(self) -> dict[JobKind, JobHandler]:
        return {
            JobKind.CHECK_PRICE: self.check_price,
            JobKind.SEND_DIGEST: self.send_digest,
            JobKind.DIGEST_FLOW: self.digest_flow,
        }

    def failure_hooks(self) -> dict[JobKind, FailureHook]:
        return {JobKind.CHECK_PRICE: self.on_check_price_failed}

    async def check_price(self, job: Job, payload: CheckPricePayload) -> dict[str, Any]:
        """
        Check one product page and persist the outcome.

        Transient scrape or database failures raise RetryableJobError; once
        attempts run out the worker records the failure through
        on_check_price_failed. Pages that load but yield no usable data
        complete with a "failed" status.

        Returns:
            Outcome dict recorded as the job result (and as the flow child value)
        """
        log = get_logger(__name__, job_id=job.id, kind=job.kind)

        async with self.session_factory() as db:
            url = payload.url
            if url:
                product = await self.resolver.find_by_url(db, url)
            else:
                log.warning(
                    f"check-price job {job.id} identifies its product by productId "
                    f"{payload.product_id}; this lookup is deprecated, send the url instead"
                )
                product = await get_product_by_id(db, payload.product_id)
                if product is None:
                    raise UnrecoverableJobError(f"Product not found: {payload.product_id}")
                url = product.url
            product_id = product.id if product is not None else None

            result = await self.pipeline.extract(url)

            if not result.success:
                if result.retryable:
                    raise RetryableJobError(result.error or "Scrape failed")
                await self._record_failure(db, product_id, result.error)
                log.info(f"No usable data for {url}: {result.error}")
                return self._outcome(url, product_id, "failed", result)

            data = result.data
            try:
                product = await self.resolver.resolve(db, url, data.title)
                product_id = product.id
                await fill_missing_details(db, product, data.title, data.image_url)
                if data.has_price:
                    await save_price_record(
                        db, product_id, data.price, data.currency or DEFAULT_CURRENCY
                    )
                    await mark_product_success(db, product_id)
                await db.commit()
            except (SQLAlchemyError, LookupError) as e:
                await db.rollback()
                raise RetryableJobError(f"Database error: {e}") from e

            await log_run(db, product_id, "SUCCESS")

        if data.has_price:
            metrics.record_price_saved(data.currency or DEFAULT_CURRENCY)
            log.info(f"Saved price for {url}: {data.price} {data.currency} via {result.method}")
            return self._outcome(url, product_id, "success", result)

        log.info(f"Title-only extraction for {url} via {result.method}, no price saved")
        return self._outcome(url, product_id, "partial", result)

    async def _record_failure(
        self, db: AsyncSession, product_id: Optional[int], error: Optional[str]
    ) -> None:
        """Stamp last_failed_at (when the product exists) and log a FAILED run."""
        if product_id is not None:
            try:
                await mark_product_failure(db, product_id)
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                logger.warning(f"Could not mark product {product_id} as failed: {e}")
        await log_run(db, product_id, "FAILED", error)

    async def on_check_price_failed(self, job: Job, error: str) -> None:
        """
        Record a check-price job that is about to settle as failed.

        Runs for every terminal failure the worker sees: the last attempt
        raising or timing out, an unrecoverable payload, or a stalled job
        out of attempts.
        """
        log = get_logger(__name__, job_id=job.id, kind=job.kind)
        async with self.session_factory() as db:
            product = None
            try:
                payload = parse_payload(job.kind, job.data)
                if payload.url:
                    product = await self.resolver.find_by_url(db, payload.url)
                else:
                    product = await get_product_by_id(db, payload.product_id)
            except UnrecoverableJobError as e:
                log.warning(f"Failed job {job.id} has an unreadable payload: {e}")
            except SQLAlchemyError as e:
                await db.rollback()
                log.warning(f"Could not look up product for failed job {job.id}: {e}")

            product_id = product.id if product is not None else None
            await self._record_failure(db, product_id, error)
        log.info(f"Recorded final failure of job {job.id} (product {product_id}): {error}")

    @staticmethod
    def _outcome(
        url: str, product_id: Optional[int], status: str, result: ScrapeResult
    ) -> dict[str, Any]:
        data = result.data
        return {
            "url": url,
            "product_id": product_id,
            "status": status,
            "success": status != "failed",
            "method": result.method,
            "price": data.price if data else None,
            "currency": data.currency if data else None,
            "error": result.error,
            "error_code": result.error_code.value if result.error_code else None,
        }

    async def send_digest(self, job: Job, payload: SendDigestPayload) -> dict[str, Any]:
        """Submit a digest flow with one price check per active product."""
        async with self.session_factory() as db:
            products = await get_active_products(db)
            urls = [product.url for product in products]

        handle = await self.orchestrator.start_digest_flow(payload.trigger_type, urls)
        if handle is None:
            return {"flow_id": None, "child_count": 0}
        return {"flow_id": handle.parent_id, "child_count": len(handle.child_ids)}

    async def digest_flow(self, job: Job, payload: DigestFlowPayload) -> dict[str, Any]:
        """
        Completion handler of a digest flow.

        Runs after every child check completed or failed. Sends at most one
        email per flow, even if this job is retried or redelivered.
        """
        log = get_logger(__name__, job_id=job.id, kind=job.kind)

        outcomes = await self.orchestrator.child_outcomes(job.id)
        failed_checks = sum(1 for outcome in outcomes if not outcome.success)
        log.info(
            f"Digest flow {job.id} settled: {len(outcomes)} checks, {failed_checks} failed"
        )

        async with self.session_factory() as db:
            trends = await self.calculator.calculate_all(db)

        if not await self.queue.mark_once(f"digest-sent:{job.id}"):
            log.warning(f"Digest for flow {job.id} was already sent, skipping")
            return {"flow_id": job.id, "sent": False, "duplicate": True}

        metrics.record_flow_completed()
        sent = await self.digest_dispatcher.dispatch(trends, outcomes)
        return {
            "flow_id": job.id,
            "sent": sent,
            "duplicate": False,
            "products": len(trends),
            "failed_checks": failed_checks,
        }
