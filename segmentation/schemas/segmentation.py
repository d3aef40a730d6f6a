"""
Segmentation API and job payload schemas
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Any, Optional

from segmentation.schemas.conditions import StrictConditionGroup


class SegmentTriggerData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    segment_id: str = Field(..., alias="segmentId")


class FlowTriggerJob(BaseModel):
    """
    Job handed to the flow executor for one matching flow.

    Serialized with the wire names:
    {"flowId", "profileId", "triggerType", "triggerData": {"segmentId"}}
    """
    model_config = ConfigDict(populate_by_name=True)

    flow_id: str = Field(..., alias="flowId")
    profile_id: str = Field(..., alias="profileId")
    trigger_type: str = Field(..., alias="triggerType")
    trigger_data: SegmentTriggerData = Field(..., alias="triggerData")

    @property
    def job_name(self) -> str:
        return f"flow-{self.flow_id}-{self.profile_id}"

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ============================================
# Hooks
# ============================================


class ProfileChangedHook(BaseModel):
    """Sent by the CRUD layer after a profile field or property changes."""
    profile_id: str = Field(..., min_length=1)
    organization_id: str = Field(..., min_length=1)


class EventTrackedHook(BaseModel):
    """Sent by event ingestion after a new event is recorded."""
    profile_id: str = Field(..., min_length=1)
    organization_id: str = Field(..., min_length=1)
    event_name: str = Field(..., min_length=1)


class HookAccepted(BaseModel):
    status: str = "queued"
    profile_id: str


class ReconcileResultResponse(BaseModel):
    profile_id: str
    organization_id: str
    entered: list[str] = Field(default_factory=list)
    exited: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    jobs_enqueued: int = 0
    dispatch_error: Optional[str] = None


# ============================================
# Segments
# ============================================


class SegmentMemberResponse(BaseModel):
    profile_id: str
    email: Optional[str] = None
    external_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    entered_at: Optional[datetime] = None


class SegmentMembersResponse(BaseModel):
    segment_id: str
    items: list[SegmentMemberResponse]
    next_cursor: Optional[str] = None


class SegmentRecalculationResponse(BaseModel):
    segment_id: str
    profiles_evaluated: int
    entered: int
    exited: int
    failed: int
    member_count: int
    skipped: bool = False
    execution_time_ms: float


class SegmentPreviewRequest(BaseModel):
    """Rules are validated strictly here; stored rules are parsed leniently."""
    organization_id: str = Field(..., min_length=1)
    conditions: StrictConditionGroup
    sample_size: int = Field(20, ge=0, le=100)


class SegmentPreviewResponse(BaseModel):
    estimated_count: int
    profiles_scanned: int
    sample_profile_ids: list[str]
    execution_time_ms: float
