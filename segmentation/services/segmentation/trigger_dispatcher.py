"""
Trigger Dispatcher

Turns segment transitions into flow trigger jobs. For every active flow
of the organization keyed on segment entry/exit whose segment is in the
matching transition set, exactly one job is enqueued:

    {"flowId", "profileId", "triggerType", "triggerData": {"segmentId"}}

Enqueue failures are collected across all matching flows and raised
together; the dispatcher never re-scans membership to recover them.
"""

import logging
from typing import Iterable, List

from sqlalchemy.ext.asyncio import AsyncSession

from segmentation.config import settings
from segmentation.exceptions import DispatchError, JobQueueError
from segmentation.models import FlowTriggerType
from segmentation.schemas.segmentation import FlowTriggerJob, SegmentTriggerData
from segmentation.services.segmentation.job_queue import JobQueue
from segmentation.services.segmentation.membership_store import MembershipStore

logger = logging.getLogger(__name__)


class TriggerDispatcher:
    """Holds the queue handle; constructed once at process start."""

    def __init__(self, queue: JobQueue, queue_name: str = settings.FLOW_TRIGGER_QUEUE):
        self.queue = queue
        self.queue_name = queue_name

    async def dispatch(
        self,
        db: AsyncSession,
        profile_id: str,
        organization_id: str,
        entered: Iterable[str],
        exited: Iterable[str],
    ) -> List[FlowTriggerJob]:
        """
        Enqueue one job per matching flow.

        Returns the enqueued jobs. Raises DispatchError after attempting
        every matching flow if any enqueue failed.
        """
        entered, exited = set(entered), set(exited)
        if not entered and not exited:
            return []

        flows = await MembershipStore(db).get_segment_trigger_flows(organization_id)

        jobs: List[FlowTriggerJob] = []
        failed_flow_ids: List[str] = []
        errors: List[BaseException] = []

        for flow in flows:
            if flow.trigger_type == FlowTriggerType.segment_entry.value:
                transitions = entered
            elif flow.trigger_type == FlowTriggerType.segment_exit.value:
                transitions = exited
            else:
                continue
            if flow.trigger_segment_id not in transitions:
                continue

            job = FlowTriggerJob(
                flow_id=flow.id,
                profile_id=profile_id,
                trigger_type=flow.trigger_type,
                trigger_data=SegmentTriggerData(segment_id=flow.trigger_segment_id),
            )
            try:
                await self.queue.enqueue(self.queue_name, job.job_name, job.to_payload())
            except JobQueueError as e:
                logger.error("Failed to enqueue trigger for flow %s, profile %s: %s", flow.id, profile_id, e)
                failed_flow_ids.append(flow.id)
                errors.append(e)
                continue
            jobs.append(job)

        if jobs:
            logger.info("Enqueued %d flow trigger(s) for profile %s", len(jobs), profile_id)
        if failed_flow_ids:
            raise DispatchError(failed_flow_ids, errors, enqueued=len(jobs))
        return jobs
