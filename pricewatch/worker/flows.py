"""Digest flow orchestration: fan out price checks, fan in to one digest job."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from pricewatch import metrics
from pricewatch.worker.jobs import CheckPricePayload, DigestFlowPayload, JobKind
from pricewatch.worker.queue import JobQueue

logger = logging.getLogger(__name__)


@dataclass
class FlowHandle:
    """Ids of a submitted flow."""

    parent_id: str
    child_ids: list[str] = field(default_factory=list)


@dataclass
class ChildOutcome:
    """Terminal value of one check-price child."""

    job_id: str
    url: Optional[str]
    product_id: Optional[int]
    success: bool
    status: str
    error: Optional[str] = None

    @classmethod
    def from_value(cls, job_id: str, value: Any) -> "ChildOutcome":
        """
        Build from a child's recorded value.

        Completed children carry the handler's result dict; failed children
        carry ``{"failed": true, "error": ..., "data": <payload>}``.
        """
        if not isinstance(value, dict):
            return cls(job_id=job_id, url=None, product_id=None, success=False,
                       status="failed", error=str(value))

        if value.get("failed"):
            data = value.get("data") or {}
            return cls(
                job_id=job_id,
                url=data.get("url"),
                product_id=_to_int(data.get("productId")),
                success=False,
                status="failed",
                error=value.get("error"),
            )

        return cls(
            job_id=job_id,
            url=value.get("url"),
            product_id=_to_int(value.get("product_id")),
            success=bool(value.get("success")),
            status=value.get("status") or ("success" if value.get("success") else "failed"),
            error=value.get("error"),
        )


def _to_int(value) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class FlowOrchestrator:
    """
    Submits digest flows and reads their children's outcomes.

    A flow is one ``digest-flow`` parent gated on one ``check-price`` child
    per product URL. The queue releases the parent exactly once, after the
    last child completes or fails; the parent's handler then builds the
    digest from the children's recorded values.
    """

    def __init__(self, queue: JobQueue):
        self.queue = queue

    async def start_digest_flow(
        self, trigger_type: str, urls: list[str]
    ) -> Optional[FlowHandle]:
        """
        Submit a digest flow over the given product URLs.

        Args:
            trigger_type: "manual" or "scheduled"
            urls: Product URLs to check, one child job each

        Returns:
            FlowHandle, or None when there is nothing to check
        """
        if not urls:
            logger.info("No active products, skipping digest flow")
            return None

        triggered_at = datetime.utcnow()
        children = [
            (JobKind.CHECK_PRICE, CheckPricePayload(url=url, triggered_at=triggered_at))
            for url in urls
        ]
        parent_id, child_ids = await self.queue.add_flow(
            JobKind.DIGEST_FLOW,
            DigestFlowPayload(trigger_type=trigger_type, child_count=len(children)),
            children,
        )

        metrics.record_flow_created(len(child_ids))
        logger.info(
            f"Started {trigger_type} digest flow {parent_id} with {len(child_ids)} price checks"
        )
        return FlowHandle(parent_id=parent_id, child_ids=child_ids)

    async def child_outcomes(self, parent_id: str) -> list[ChildOutcome]:
        """Outcomes of every settled child of a flow, in child id order."""
        values = await self.queue.get_children_values(parent_id)
        return [
            ChildOutcome.from_value(job_id, values[job_id])
            for job_id in sorted(values, key=lambda v: int(v) if v.isdigit() else 0)
        ]
