from segmentation.schemas.conditions import (
    ConditionGroup,
    StrictConditionGroup,
    PropertyCondition,
    DateCondition,
    EventCondition,
    SegmentRefCondition,
    MalformedCondition,
    parse_condition_group,
    references_event,
)
from segmentation.schemas.segmentation import (
    FlowTriggerJob,
    ProfileChangedHook,
    EventTrackedHook,
    ReconcileResultResponse,
    SegmentMembersResponse,
    SegmentPreviewRequest,
    SegmentPreviewResponse,
    SegmentRecalculationResponse,
)
