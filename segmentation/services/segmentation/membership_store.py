"""
Membership Store

The persistence contract of the segmentation engine over one AsyncSession:
profile/event/segment/flow reads, and single-record membership writes.
Every write commits on its own; no transaction spans segments.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from segmentation.models import (
    Event,
    Flow,
    FlowStatus,
    Profile,
    Segment,
    SegmentMembership,
    SEGMENT_TRIGGER_TYPES,
)

logger = logging.getLogger(__name__)


class MembershipStore:
    """Reads and writes used by reconcile, dispatch and recalculation."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # READS
    # =========================================================================

    async def get_profile(self, profile_id: str) -> Optional[Profile]:
        result = await self.db.execute(select(Profile).where(Profile.id == profile_id))
        return result.scalar_one_or_none()

    async def get_recent_events(self, profile_id: str, limit: int) -> List[Event]:
        """Newest-first event window for a profile."""
        result = await self.db.execute(
            select(Event)
            .where(Event.profile_id == profile_id)
            .order_by(Event.timestamp.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_segment(self, segment_id: str) -> Optional[Segment]:
        result = await self.db.execute(select(Segment).where(Segment.id == segment_id))
        return result.scalar_one_or_none()

    async def get_active_segments(self, organization_id: str) -> List[Segment]:
        result = await self.db.execute(
            select(Segment)
            .where(Segment.organization_id == organization_id, Segment.is_active == True)
            .order_by(Segment.created_at, Segment.id)
        )
        return list(result.scalars().all())

    async def get_open_segment_ids(
        self, profile_id: str, segment_ids: Optional[Iterable[str]] = None
    ) -> Set[str]:
        """Segments the profile currently belongs to, optionally restricted."""
        query = select(SegmentMembership.segment_id).where(
            SegmentMembership.profile_id == profile_id,
            SegmentMembership.exited_at.is_(None),
        )
        if segment_ids is not None:
            segment_ids = list(segment_ids)
            if not segment_ids:
                return set()
            query = query.where(SegmentMembership.segment_id.in_(segment_ids))
        result = await self.db.execute(query)
        return {row[0] for row in result.all()}

    async def get_segment_trigger_flows(self, organization_id: str) -> List[Flow]:
        """Active flows triggered by segment entry or exit."""
        result = await self.db.execute(
            select(Flow).where(
                Flow.organization_id == organization_id,
                Flow.status == FlowStatus.active.value,
                Flow.trigger_type.in_(SEGMENT_TRIGGER_TYPES),
            )
        )
        return list(result.scalars().all())

    async def count_open_memberships(self, segment_id: str) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(SegmentMembership)
            .where(SegmentMembership.segment_id == segment_id, SegmentMembership.exited_at.is_(None))
        )
        return result.scalar() or 0

    async def get_profile_ids_page(
        self, organization_id: str, after_id: Optional[str], limit: int
    ) -> List[str]:
        """Keyset page of profile IDs in an organization."""
        query = select(Profile.id).where(Profile.organization_id == organization_id)
        if after_id is not None:
            query = query.where(Profile.id > after_id)
        result = await self.db.execute(query.order_by(Profile.id).limit(limit))
        return [row[0] for row in result.all()]

    async def get_profiles_page(
        self, organization_id: str, after_id: Optional[str], limit: int
    ) -> List[Profile]:
        query = select(Profile).where(Profile.organization_id == organization_id)
        if after_id is not None:
            query = query.where(Profile.id > after_id)
        result = await self.db.execute(query.order_by(Profile.id).limit(limit))
        return list(result.scalars().all())

    # =========================================================================
    # WRITES
    # =========================================================================

    async def open_membership(self, profile_id: str, segment_id: str) -> bool:
        """
        Create an open membership row and bump the segment's member count.

        Returns False (and writes nothing) when an open row already exists,
        including one created concurrently and rejected by the unique index.
        """
        existing = await self.db.execute(
            select(SegmentMembership.id).where(
                SegmentMembership.profile_id == profile_id,
                SegmentMembership.segment_id == segment_id,
                SegmentMembership.exited_at.is_(None),
            )
        )
        if existing.first() is not None:
            return False

        self.db.add(
            SegmentMembership(
                profile_id=profile_id,
                segment_id=segment_id,
                entered_at=datetime.now(timezone.utc),
            )
        )
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            logger.info("Open membership for profile %s in segment %s already exists", profile_id, segment_id)
            return False

        await self.db.execute(
            update(Segment)
            .where(Segment.id == segment_id)
            .values(member_count=Segment.member_count + 1)
        )
        await self.db.commit()
        return True

    async def close_membership(self, profile_id: str, segment_id: str) -> bool:
        """
        Close the open membership row (set exited_at) and decrement the count.

        The row is kept as history. Returns False when no open row exists.
        """
        result = await self.db.execute(
            select(SegmentMembership).where(
                SegmentMembership.profile_id == profile_id,
                SegmentMembership.segment_id == segment_id,
                SegmentMembership.exited_at.is_(None),
            )
        )
        membership = result.scalars().first()
        if membership is None:
            return False

        membership.exited_at = datetime.now(timezone.utc)
        await self.db.execute(
            update(Segment)
            .where(Segment.id == segment_id)
            .values(
                member_count=case(
                    (Segment.member_count > 0, Segment.member_count - 1),
                    else_=0,
                )
            )
        )
        await self.db.commit()
        return True

    async def set_member_count(self, segment_id: str, member_count: int) -> None:
        await self.db.execute(
            update(Segment)
            .where(Segment.id == segment_id)
            .values(member_count=member_count, last_calculated_at=datetime.now(timezone.utc))
        )
        await self.db.commit()
