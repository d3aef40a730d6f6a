"""
Marketing Segmentation Service - Main Application

Hosts the reconcile hooks, segment member/recalculation endpoints and
the background pieces they rely on:
- Reconcile worker pool (hook-driven membership updates)
- Trigger dispatcher over the Redis job queue
- Scheduled segment refresh

SECURITY FEATURES:
- Conditional API docs (disabled in production by default)
- Optional shared-secret guard on every /api/v2 route
- Structured logging without sensitive data
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
import logging

from segmentation.api.v2.router import api_router
from segmentation.config import settings
from segmentation.core.sentry import init_sentry
from segmentation.database import dispose_db, init_db
from segmentation.exceptions import register_exception_handlers
from segmentation.middleware.correlation import CorrelationIdMiddleware, CorrelationLogFilter
# Import all models to register them with SQLAlchemy metadata before init_db()
from segmentation.models import Profile, Event, Segment, SegmentMembership, Flow
from segmentation.services.segmentation.job_queue import RedisJobQueue
from segmentation.services.segmentation.reconcile_worker import ReconcileWorker
from segmentation.services.segmentation.trigger_dispatcher import TriggerDispatcher
from segmentation.tasks.segment_refresh import start_segment_refresh, stop_segment_refresh

# Configure secure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] [%(request_id)s] %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(CorrelationLogFilter())
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Marketing Segmentation Service...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    init_sentry(release=VERSION)
    # SECURITY: Don't log full database URL, just prefix
    if settings.DATABASE_URL:
        logger.info(f"Database URL prefix: {settings.DATABASE_URL[:30]}...")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        # SECURITY: Don't log full exception details which may contain credentials
        logger.error(f"Database initialization failed: {type(e).__name__}")
        logger.warning("App starting without database - reconcile passes will fail")

    job_queue = RedisJobQueue(settings.REDIS_URL)
    dispatcher = TriggerDispatcher(job_queue, settings.FLOW_TRIGGER_QUEUE)
    worker = ReconcileWorker(dispatcher)
    await worker.start()

    app.state.trigger_dispatcher = dispatcher
    app.state.reconcile_worker = worker

    if settings.SEGMENT_REFRESH_ENABLED:
        start_segment_refresh(dispatcher)

    yield

    # Shutdown
    logger.info("Shutting down Marketing Segmentation Service...")
    stop_segment_refresh()
    await worker.stop(drain=True)
    await job_queue.close()
    await dispose_db()


# SECURITY: Conditionally enable docs based on settings
docs_url = "/docs" if settings.DOCS_ENABLED else None
redoc_url = "/redoc" if settings.DOCS_ENABLED else None

app = FastAPI(
    title="Marketing Segmentation Service",
    description="Segment membership reconciliation and flow triggering",
    version=VERSION,
    docs_url=docs_url,
    redoc_url=redoc_url,
    lifespan=lifespan,
)

app.add_middleware(CorrelationIdMiddleware)
register_exception_handlers(app)

# Include routers
app.include_router(api_router, prefix="/api/v2")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    worker = getattr(app.state, "reconcile_worker", None)
    return {
        "status": "healthy",
        "version": VERSION,
        "environment": settings.ENVIRONMENT,
        "worker": worker.stats if worker is not None else None,
    }


# For running with uvicorn directly (development only)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "segmentation.main:app",
        host="0.0.0.0",
        port=5002,
        reload=settings.DEBUG,
    )
