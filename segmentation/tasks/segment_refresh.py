"""Segment Refresh Scheduler - Periodic full recalculation of active segments.

Hooks only re-evaluate a profile when something about it changes, so
time-based rules (e.g. "signed up in the last 7 days") would never let a
profile age out on their own. This job recalculates every active segment
on an interval, which also corrects any member_count drift.
"""

import logging
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from segmentation.config import settings
from segmentation.database import async_session_maker
from segmentation.models import Segment
from segmentation.services.segmentation.segment_service import SegmentService

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global scheduler
    if scheduler is None:
        scheduler = AsyncIOScheduler()
    return scheduler


async def refresh_active_segments(
    dispatcher,
    session_factory: Optional[Callable[[], Any]] = None,
) -> Dict[str, int]:
    """
    Main job: recalculate every active segment, one session per segment.

    A failing segment is logged and skipped; the run continues.
    """
    session_factory = session_factory or async_session_maker
    logger.info("Starting segment refresh...")
    refreshed = 0
    errors = 0

    try:
        async with session_factory() as db:
            result = await db.execute(
                select(Segment.id).where(Segment.is_active == True).order_by(Segment.created_at, Segment.id)
            )
            segment_ids = [row[0] for row in result.all()]
    except Exception as e:
        logger.error(f"Fatal error loading segments for refresh: {e}", exc_info=True)
        return {"refreshed": 0, "errors": 1}

    logger.info(f"Found {len(segment_ids)} active segments to refresh")

    for segment_id in segment_ids:
        try:
            async with session_factory() as db:
                await SegmentService(db, dispatcher).recalculate_segment(segment_id)
            refreshed += 1
        except Exception as e:
            errors += 1
            logger.error(f"Error refreshing segment {segment_id}: {e}", exc_info=True)

    logger.info(f"Segment refresh complete. Refreshed: {refreshed}, Errors: {errors}")
    return {"refreshed": refreshed, "errors": errors}


def start_segment_refresh(dispatcher) -> AsyncIOScheduler:
    """Start the scheduler with the refresh job."""
    global scheduler

    scheduler = get_scheduler()

    scheduler.add_job(
        refresh_active_segments,
        IntervalTrigger(minutes=settings.SEGMENT_REFRESH_INTERVAL_MINUTES),
        kwargs={"dispatcher": dispatcher},
        id="segment_refresh",
        name="Recalculate active segments",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    if not scheduler.running:
        scheduler.start()
        logger.info("Segment refresh scheduler started")
        for job in scheduler.get_jobs():
            logger.info(f"  - {job.name}: {job.trigger}")

    return scheduler


def stop_segment_refresh():
    """Stop the segment refresh scheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Segment refresh scheduler stopped")
