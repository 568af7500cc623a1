"""Main application entry point: HTTP boundary, worker pool and scheduler in one process."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Response
from prometheus_fastapi_instrumentator import Instrumentator

from pricewatch.api.routes import settings as settings_routes
from pricewatch.api.routes import triggers
from pricewatch.config import settings, validate_environment
from pricewatch.db.models import Base
from pricewatch.db.session import AsyncSessionLocal, engine
from pricewatch.ingest.pipeline import ScraperPipeline
from pricewatch.logging_config import setup_logging
from pricewatch.notify.digest import DigestDispatcher
from pricewatch.worker.dispatcher import Dispatcher, Worker
from pricewatch.worker.flows import FlowOrchestrator
from pricewatch.worker.queue import JobQueue
from pricewatch.worker.scheduler import DigestScheduler
from pricewatch.worker.tasks import JobHandlers

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    setup_logging()
    logger.info("Starting price watch worker...")

    env = validate_environment(settings)
    for warning in env.warnings:
        logger.warning(warning)
    if not env.valid:
        missing = ", ".join(env.missing)
        logger.critical(f"Missing required environment variables: {missing}")
        raise RuntimeError(f"Missing required environment variables: {missing}")

    # Initialize database
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # The queue is the single producer/consumer handle for the whole process
    queue = JobQueue.from_url(settings.redis_url)
    pipeline = ScraperPipeline()
    digest_dispatcher = DigestDispatcher()
    orchestrator = FlowOrchestrator(queue)
    handlers = JobHandlers(
        session_factory=AsyncSessionLocal,
        queue=queue,
        pipeline=pipeline,
        orchestrator=orchestrator,
        digest_dispatcher=digest_dispatcher,
    )
    worker = Worker(queue, Dispatcher(handlers.handlers(), handlers.failure_hooks()))

    app.state.queue = queue
    app.state.session_factory = AsyncSessionLocal
    app.state.worker = worker
    app.state.digest_scheduler = None

    await worker.start()

    if settings.enable_scheduler:
        digest_scheduler = DigestScheduler(queue, AsyncSessionLocal)
        await digest_scheduler.start()
        app.state.digest_scheduler = digest_scheduler
    else:
        logger.info("Scheduler disabled in this process (ENABLE_SCHEDULER=false)")

    yield

    # Shutdown
    logger.info("Shutting down...")

    if app.state.digest_scheduler:
        app.state.digest_scheduler.shutdown()

    await worker.stop()
    await pipeline.close()
    await digest_dispatcher.close()
    await queue.close()
    await engine.dispose()

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Price Watch",
    description="Track product prices and email trend digests",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health", "/favicon.ico"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

# Include API routes
app.include_router(triggers.router)
app.include_router(settings_routes.router)


@app.get("/favicon.ico")
async def favicon():
    """Return empty favicon response to avoid 404 noise."""
    return Response(status_code=204)


if __name__ == "__main__":
    # Run with uvicorn
    uvicorn.run(
        "pricewatch.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
