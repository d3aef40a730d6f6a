from uuid import uuid4

from sqlalchemy import Column, String, DateTime, ForeignKey, JSON, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from segmentation.database import Base


def generate_id() -> str:
    return str(uuid4())


class Profile(Base):
    """End-customer profile, scoped to an organization."""

    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(String(36), nullable=False, index=True)

    # Identity fields (at least one expected)
    email = Column(String(255), index=True)
    external_id = Column(String(255))
    phone = Column(String(32))
    first_name = Column(String(100))
    last_name = Column(String(100))

    # Free-form property bag
    properties = Column(JSON, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    events = relationship("Event", back_populates="profile", cascade="all, delete-orphan")
    memberships = relationship("SegmentMembership", back_populates="profile", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_profiles_org_email", "organization_id", "email"),
    )

    def __repr__(self):
        return f"<Profile id={self.id} org={self.organization_id} email={self.email}>"


class Event(Base):
    """Immutable behavioral event. Append-only."""

    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(String(36), nullable=False, index=True)
    profile_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)

    name = Column(String(255), nullable=False)
    properties = Column(JSON, default=dict)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    source = Column(String(50), default="api")

    profile = relationship("Profile", back_populates="events")

    __table_args__ = (
        # Newest-first window per profile
        Index("ix_events_profile_timestamp", "profile_id", "timestamp"),
    )

    def __repr__(self):
        return f"<Event id={self.id} name='{self.name}' profile={self.profile_id}>"
