"""
Segmentation Services

Rule evaluation, membership reconciliation and flow trigger dispatch.
"""

from segmentation.services.segmentation.condition_evaluator import (
    ConditionEvaluator,
    EventRecord,
    ProfileSnapshot,
    evaluate,
)
from segmentation.services.segmentation.job_queue import JobQueue, RedisJobQueue
from segmentation.services.segmentation.membership_store import MembershipStore
from segmentation.services.segmentation.membership_engine import (
    MembershipTransitionEngine,
    ReconcileResult,
)
from segmentation.services.segmentation.trigger_dispatcher import TriggerDispatcher
from segmentation.services.segmentation.reconcile_worker import ReconcileWorker
from segmentation.services.segmentation.segment_service import SegmentService

__all__ = [
    "ConditionEvaluator",
    "EventRecord",
    "ProfileSnapshot",
    "evaluate",
    "JobQueue",
    "RedisJobQueue",
    "MembershipStore",
    "MembershipTransitionEngine",
    "ReconcileResult",
    "TriggerDispatcher",
    "ReconcileWorker",
    "SegmentService",
]
