"""Prometheus metrics for the price watch worker."""

from prometheus_client import Counter, Histogram, Info

# Application info
app_info = Info("pricewatch", "Price watch application info")
app_info.info({"version": "0.1.0", "name": "pricewatch"})

# Job metrics
jobs_processed_total = Counter(
    "jobs_processed_total",
    "Total number of jobs that reached a terminal state or were retried",
    ["kind", "status"],
)

job_duration_seconds = Histogram(
    "job_duration_seconds",
    "Time spent running a job handler",
    ["kind"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

# Flow metrics
flows_created_total = Counter(
    "flows_created_total",
    "Total number of digest flows submitted",
)

flow_children_total = Counter(
    "flow_children_total",
    "Total number of child jobs registered on digest flows",
)

flows_completed_total = Counter(
    "flows_completed_total",
    "Total number of digest flows whose children all settled",
)

# Scrape metrics
scrape_strategy_attempts_total = Counter(
    "scrape_strategy_attempts_total",
    "Total number of extraction attempts per strategy",
    ["strategy"],
)

scrape_strategy_success_total = Counter(
    "scrape_strategy_success_total",
    "Total number of extraction attempts per strategy that found a price",
    ["strategy"],
)

scrape_failures_total = Counter(
    "scrape_failures_total",
    "Total number of scrapes where every strategy failed",
    ["error_code"],
)

price_records_total = Counter(
    "price_records_total",
    "Total number of price records written",
    ["currency"],
)

# Digest metrics
digest_emails_total = Counter(
    "digest_emails_total",
    "Total number of digest email send attempts",
    ["status"],
)


def record_job(kind: str, status: str, duration: float | None = None):
    """Record a job outcome ("completed", "failed" or "retried")."""
    jobs_processed_total.labels(kind=kind, status=status).inc()
    if duration is not None:
        job_duration_seconds.labels(kind=kind).observe(duration)


def record_flow_created(child_count: int):
    """Record a submitted digest flow."""
    flows_created_total.inc()
    flow_children_total.inc(child_count)


def record_flow_completed():
    """Record a digest flow released for completion."""
    flows_completed_total.inc()


def record_strategy_attempt(strategy: str):
    """Record an extraction attempt."""
    scrape_strategy_attempts_total.labels(strategy=strategy).inc()


def record_strategy_success(strategy: str):
    """Record an extraction attempt that produced a price."""
    scrape_strategy_success_total.labels(strategy=strategy).inc()


def record_scrape_failure(error_code: str):
    """Record a scrape where all strategies failed."""
    scrape_failures_total.labels(error_code=error_code).inc()


def record_price_saved(currency: str):
    """Record a persisted price record."""
    price_records_total.labels(currency=currency).inc()


def record_digest_email(success: bool):
    """Record a digest email send attempt."""
    digest_emails_total.labels(status="sent" if success else "failed").inc()
