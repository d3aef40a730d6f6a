import enum

from sqlalchemy import Column, String, DateTime, ForeignKey, JSON, Index
from sqlalchemy.sql import func
from segmentation.database import Base
from segmentation.models.profile import generate_id


class FlowStatus(str, enum.Enum):
    draft = "draft"
    active = "active"
    paused = "paused"
    archived = "archived"


class FlowTriggerType(str, enum.Enum):
    event = "event"
    segment_entry = "segment_entry"
    segment_exit = "segment_exit"
    date_property = "date_property"
    manual = "manual"


SEGMENT_TRIGGER_TYPES = (FlowTriggerType.segment_entry.value, FlowTriggerType.segment_exit.value)


class Flow(Base):
    """Automation flow. Only the trigger columns are read by segmentation."""

    __tablename__ = "flows"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    status = Column(String(20), default=FlowStatus.draft.value, nullable=False)

    trigger_type = Column(String(50), nullable=False)
    trigger_segment_id = Column(String(36), ForeignKey("segments.id", ondelete="SET NULL"))
    trigger_config = Column(JSON)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index("ix_flows_org_status_trigger", "organization_id", "status", "trigger_type"),
    )

    def __repr__(self):
        return f"<Flow id={self.id} trigger={self.trigger_type} segment={self.trigger_segment_id}>"
