"""
Database engine and sessions.

One async engine per process. Request handlers get a session from
get_db; reconcile workers and the refresh job open their own sessions
from async_session_maker, one per job or per segment.

SECURITY:
- SQL echo follows settings.sqlalchemy_echo (always off in production)
- The connection string is never logged
"""

import logging
import time

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from segmentation.config import settings

logger = logging.getLogger(__name__)

SLOW_QUERY_THRESHOLD_MS = 500
SLOW_QUERY_PREVIEW_CHARS = 200


def _log_slow_queries(engine: AsyncEngine) -> None:
    """Warn about statements slower than SLOW_QUERY_THRESHOLD_MS."""

    @event.listens_for(engine.sync_engine, "before_cursor_execute")
    def _start(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("query_started", []).append(time.monotonic())

    @event.listens_for(engine.sync_engine, "after_cursor_execute")
    def _finish(conn, cursor, statement, parameters, context, executemany):
        started = conn.info.get("query_started")
        if not started:
            return
        elapsed_ms = (time.monotonic() - started.pop()) * 1000
        if elapsed_ms < SLOW_QUERY_THRESHOLD_MS:
            return
        preview = statement[:SLOW_QUERY_PREVIEW_CHARS]
        if len(statement) > SLOW_QUERY_PREVIEW_CHARS:
            preview += "..."
        logger.warning("Slow query (%.0fms): %s", elapsed_ms, preview)


def build_engine(url: str) -> AsyncEngine:
    options = {"echo": settings.sqlalchemy_echo}
    if make_url(url).get_backend_name() != "sqlite":
        # Each reconcile worker can hold a connection at the same time
        options.update(
            pool_size=max(5, settings.RECONCILE_WORKER_CONCURRENCY),
            max_overflow=10,
            pool_recycle=3600,
            pool_pre_ping=True,
        )
    engine = create_async_engine(url, **options)
    _log_slow_queries(engine)
    return engine


engine = build_engine(settings.DATABASE_URL)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    """Request-scoped session. Services commit their own writes."""
    async with async_session_maker() as session:
        yield session


async def init_db():
    """Create missing tables (including the open-membership partial index)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_db():
    await engine.dispose()
