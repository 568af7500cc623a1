"""Digest dispatch: turn trends and flow outcomes into one summary email."""

import logging
from datetime import datetime
from typing import Optional

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.detect.trends import ProductTrend
from pricewatch.notify.email import ResendEmailClient
from pricewatch.notify.formatters import (
    DIGEST_WINDOWS,
    DigestItem,
    digest_subject,
    render_digest_html,
    render_digest_text,
)
from pricewatch.worker.flows import ChildOutcome

logger = logging.getLogger(__name__)


class DigestDispatcher:
    """Builds and sends the digest email for a completed flow."""

    def __init__(
        self,
        email_client: Optional[ResendEmailClient] = None,
        recipient: Optional[str] = None,
    ):
        self.email_client = email_client or ResendEmailClient()
        self.recipient = recipient if recipient is not None else settings.alert_email

    async def close(self):
        await self.email_client.close()

    @staticmethod
    def build_items(
        trends: list[ProductTrend],
        outcomes: Optional[list[ChildOutcome]] = None,
    ) -> list[DigestItem]:
        """
        Build digest rows.

        A product is marked failed when its latest failure is newer than its
        latest success, or when its check failed in this flow.
        """
        failed_in_flow = {}
        for outcome in outcomes or []:
            if outcome.success:
                continue
            if outcome.product_id is not None:
                failed_in_flow[("id", outcome.product_id)] = outcome.error
            if outcome.url:
                failed_in_flow[("url", outcome.url)] = outcome.error

        items = []
        for trend in trends:
            stale = trend.last_failed is not None and (
                trend.last_checked is None or trend.last_failed > trend.last_checked
            )
            flow_key = ("id", trend.product_id)
            if flow_key not in failed_in_flow:
                flow_key = ("url", trend.url)
            failed_now = flow_key in failed_in_flow

            items.append(
                DigestItem(
                    name=trend.name,
                    url=trend.url,
                    image_url=trend.image_url,
                    current_price=trend.current_price,
                    currency=trend.currency,
                    last_checked=trend.last_checked,
                    last_failed=trend.last_failed,
                    vs_last_check=trend.vs_last_check,
                    vs_averages={days: trend.change_vs_average(days) for days in DIGEST_WINDOWS},
                    failed=stale or failed_now,
                    error=failed_in_flow.get(flow_key),
                )
            )
        return items

    async def dispatch(
        self,
        trends: list[ProductTrend],
        outcomes: Optional[list[ChildOutcome]] = None,
        generated_at: Optional[datetime] = None,
    ) -> bool:
        """
        Send the digest.

        Args:
            trends: Trend rows for every active product
            outcomes: Child outcomes of the flow that produced them
            generated_at: Report timestamp

        Returns:
            True if the email was accepted; False if skipped or not sent
        """
        if not trends:
            logger.info("No products to report, digest not sent")
            return False
        if not self.recipient:
            logger.error("ALERT_EMAIL not configured, digest not sent")
            metrics.record_digest_email(False)
            return False

        generated_at = generated_at or datetime.utcnow()
        items = self.build_items(trends, outcomes)

        sent = await self.email_client.send(
            to=self.recipient,
            subject=digest_subject(generated_at, settings.environment),
            html=render_digest_html(items, generated_at),
            text=render_digest_text(items, generated_at),
        )
        metrics.record_digest_email(sent)

        failed_count = sum(1 for item in items if item.failed)
        if sent:
            logger.info(
                f"Digest sent to {self.recipient}: {len(items)} products, {failed_count} failed"
            )
        else:
            logger.error(f"Digest email to {self.recipient} was not sent")
        return sent
