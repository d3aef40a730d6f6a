# Segmentation Models
from segmentation.models.profile import Profile, Event
from segmentation.models.segment import Segment, SegmentMembership
from segmentation.models.flow import Flow, FlowStatus, FlowTriggerType, SEGMENT_TRIGGER_TYPES

__all__ = [
    "Profile",
    "Event",
    "Segment",
    "SegmentMembership",
    "Flow",
    "FlowStatus",
    "FlowTriggerType",
    "SEGMENT_TRIGGER_TYPES",
]
