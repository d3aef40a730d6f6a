"""
Reconcile Worker Pool

Decouples reconcile passes from the request path. Hooks submit a job and
get back an asyncio.Future; N consumer tasks drain a bounded in-memory
queue, each job running in its own AsyncSession. The future resolves with
the ReconcileResult or the exception the pass raised.

The submitting request's correlation/request IDs travel with the job so
worker log lines carry the IDs of the hook call that caused them.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from segmentation.config import settings
from segmentation.core.sentry import capture_exception
from segmentation.database import async_session_maker
from segmentation.exceptions import WorkerNotRunningError
from segmentation.middleware.correlation import bound_ids, current_ids
from segmentation.services.segmentation.membership_engine import (
    MembershipTransitionEngine,
    ReconcileResult,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconcileJob:
    profile_id: str
    organization_id: str
    future: asyncio.Future
    event_name: Optional[str] = None
    correlation_id: str = ""
    request_id: str = ""


def _mark_retrieved(future: asyncio.Future) -> None:
    # Failures are logged by the worker; unawaited futures must not warn again
    if not future.cancelled():
        future.exception()


class ReconcileWorker:
    """Asyncio worker pool running reconcile passes."""

    def __init__(
        self,
        dispatcher,
        session_factory: Callable[[], Any] = async_session_maker,
        concurrency: int = settings.RECONCILE_WORKER_CONCURRENCY,
        maxsize: int = settings.RECONCILE_QUEUE_MAXSIZE,
        event_window: int = settings.EVENT_WINDOW_SIZE,
    ):
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.concurrency = concurrency
        self.maxsize = maxsize
        self.event_window = event_window

        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self._running = False

        self.submitted = 0
        self.completed = 0
        self.failed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "submitted": self.submitted,
            "completed": self.completed,
            "failed": self.failed,
            "pending": self._queue.qsize() if self._queue is not None else 0,
            "workers": len(self._tasks),
        }

    async def start(self) -> None:
        if self._running:
            return
        self._queue = asyncio.Queue(maxsize=self.maxsize)
        self._tasks = [
            asyncio.create_task(self._consume(i), name=f"reconcile-worker-{i}")
            for i in range(self.concurrency)
        ]
        self._running = True
        logger.info("Reconcile worker pool started with %d workers", self.concurrency)

    async def stop(self, drain: bool = True) -> None:
        """
        Stop the pool.

        With drain=True queued jobs run to completion first; otherwise
        their futures are cancelled. In-flight passes always finish.
        """
        if not self._running:
            return
        self._running = False

        if drain:
            await self._queue.join()
        else:
            while not self._queue.empty():
                job = self._queue.get_nowait()
                job.future.cancel()
                self._queue.task_done()
            await self._queue.join()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Reconcile worker pool stopped: %s", self.stats)

    async def submit_profile_change(self, profile_id: str, organization_id: str) -> asyncio.Future:
        return await self._submit(profile_id, organization_id, None)

    async def submit_event(self, profile_id: str, organization_id: str, event_name: str) -> asyncio.Future:
        return await self._submit(profile_id, organization_id, event_name)

    async def _submit(
        self, profile_id: str, organization_id: str, event_name: Optional[str]
    ) -> asyncio.Future:
        if not self._running:
            raise WorkerNotRunningError("Reconcile worker pool is not running")

        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_mark_retrieved)
        correlation_id, request_id = current_ids()
        job = ReconcileJob(
            profile_id=profile_id,
            organization_id=organization_id,
            future=future,
            event_name=event_name,
            correlation_id=correlation_id,
            request_id=request_id,
        )
        # Blocks when the queue is full
        await self._queue.put(job)
        self.submitted += 1
        return future

    async def _consume(self, worker_index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run(job)
            finally:
                self._queue.task_done()

    async def _run(self, job: ReconcileJob) -> None:
        with bound_ids(job.correlation_id, job.request_id):
            try:
                async with self.session_factory() as db:
                    engine = MembershipTransitionEngine(db, self.dispatcher, event_window=self.event_window)
                    if job.event_name is None:
                        result: ReconcileResult = await engine.reconcile(job.profile_id, job.organization_id)
                    else:
                        result = await engine.reconcile_for_event(
                            job.profile_id, job.organization_id, job.event_name
                        )
            except Exception as e:
                self.failed += 1
                logger.error(
                    "Reconcile failed for profile %s: %s", job.profile_id, e, exc_info=True
                )
                capture_exception(
                    e, context={"profile_id": job.profile_id, "organization_id": job.organization_id}
                )
                if not job.future.done():
                    job.future.set_exception(e)
            else:
                self.completed += 1
                if not job.future.done():
                    job.future.set_result(result)
