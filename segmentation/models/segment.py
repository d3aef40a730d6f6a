"""
Segment Models

- Segment: organization-scoped named rule over profiles
- SegmentMembership: profile x segment history; a row with a null
  exited_at is the profile's current membership
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey, JSON, Index, text
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from segmentation.database import Base
from segmentation.models.profile import generate_id


class Segment(Base):
    """
    Dynamic audience segment.

    conditions holds the rule tree as JSON:
    {
        "operator": "and",
        "conditions": [
            {"type": "property", "field": "plan", "operator": "equals", "value": "pro"},
            {"type": "event", "eventName": "Placed Order", "operator": "has_done",
             "count": {"operator": "at_least", "value": 3}},
            {"operator": "or", "conditions": [...]}
        ]
    }
    """
    __tablename__ = "segments"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(String(36), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)

    conditions = Column(JSON)

    is_active = Column(Boolean, default=True, nullable=False)
    member_count = Column(Integer, default=0, nullable=False)
    last_calculated_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    memberships = relationship("SegmentMembership", back_populates="segment", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Segment id={self.id} name='{self.name}' count={self.member_count}>"


class SegmentMembership(Base):
    """
    Membership history row.

    Closed on exit (exited_at set), never deleted.
    """
    __tablename__ = "segment_memberships"

    id = Column(String(36), primary_key=True, default=generate_id)
    segment_id = Column(String(36), ForeignKey("segments.id", ondelete="CASCADE"), nullable=False)
    profile_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)

    entered_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    exited_at = Column(DateTime(timezone=True))

    segment = relationship("Segment", back_populates="memberships")
    profile = relationship("Profile", back_populates="memberships")

    __table_args__ = (
        # At most one open row per (profile, segment)
        Index(
            "uq_segment_memberships_open",
            "profile_id",
            "segment_id",
            unique=True,
            postgresql_where=text("exited_at IS NULL"),
            sqlite_where=text("exited_at IS NULL"),
        ),
        Index("ix_segment_memberships_segment_entered", "segment_id", "entered_at"),
    )

    @property
    def is_open(self) -> bool:
        return self.exited_at is None

    def __repr__(self):
        return f"<SegmentMembership segment={self.segment_id} profile={self.profile_id} open={self.is_open}>"
