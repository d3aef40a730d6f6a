# Services module
from segmentation.services.segmentation import (
    ConditionEvaluator,
    MembershipTransitionEngine,
    TriggerDispatcher,
    ReconcileWorker,
    SegmentService,
)

__all__ = [
    "ConditionEvaluator",
    "MembershipTransitionEngine",
    "TriggerDispatcher",
    "ReconcileWorker",
    "SegmentService",
]
