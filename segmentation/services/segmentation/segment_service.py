"""
Segment Service

Segment-level operations built on the reconcile engine:
- Full-population recalculation of one segment
- Cursor-paginated member listing
- Rule preview (evaluate without writing)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from segmentation.config import settings
from segmentation.exceptions import SegmentNotFoundError
from segmentation.models import Profile, SegmentMembership
from segmentation.schemas.conditions import ConditionGroup
from segmentation.services.segmentation.condition_evaluator import (
    ConditionEvaluator,
    EventRecord,
    ProfileSnapshot,
)
from segmentation.services.segmentation.membership_engine import MembershipTransitionEngine
from segmentation.services.segmentation.membership_store import MembershipStore

logger = logging.getLogger(__name__)

RECALCULATION_PAGE_SIZE = 500
DEFAULT_MEMBERS_LIMIT = 50
MAX_MEMBERS_LIMIT = 200
PREVIEW_PROFILE_LIMIT = 10000


@dataclass
class SegmentRecalculationResult:
    """Result of recalculating one segment over its whole organization."""

    segment_id: str
    profiles_evaluated: int = 0
    entered: int = 0
    exited: int = 0
    failed: int = 0
    member_count: int = 0
    skipped: bool = False
    execution_time_ms: float = 0


@dataclass
class SegmentMembersPage:
    segment_id: str
    members: List[Tuple[SegmentMembership, Profile]] = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass
class SegmentPreviewResult:
    estimated_count: int
    profiles_scanned: int
    sample_profile_ids: List[str] = field(default_factory=list)
    execution_time_ms: float = 0


def _elapsed_ms(start_time: datetime) -> float:
    return (datetime.now(timezone.utc) - start_time).total_seconds() * 1000


class SegmentService:
    """Segment operations over one AsyncSession."""

    def __init__(self, db: AsyncSession, dispatcher=None):
        self.db = db
        self.dispatcher = dispatcher
        self.store = MembershipStore(db)

    async def recalculate_segment(
        self, segment_id: str, now: Optional[datetime] = None
    ) -> SegmentRecalculationResult:
        """
        Reconcile one segment for every profile of its organization.

        Transitions dispatch flow triggers exactly as a hook-driven
        reconcile would. The stored member count is reset to the true
        number of open rows afterwards. Inactive segments are skipped:
        hooks never evaluate them, so neither does recalculation.
        """
        start_time = datetime.now(timezone.utc)

        segment = await self.store.get_segment(segment_id)
        if segment is None:
            raise SegmentNotFoundError(segment_id)
        if not segment.is_active:
            logger.info("Segment %s is inactive, skipping recalculation", segment_id)
            return SegmentRecalculationResult(
                segment_id=segment_id,
                member_count=segment.member_count or 0,
                skipped=True,
                execution_time_ms=_elapsed_ms(start_time),
            )
        organization_id = segment.organization_id

        engine = MembershipTransitionEngine(
            self.db, self.dispatcher, event_window=settings.EVENT_WINDOW_SIZE, now=now
        )
        result = SegmentRecalculationResult(segment_id=segment_id)

        after_id: Optional[str] = None
        while True:
            profile_ids = await self.store.get_profile_ids_page(
                organization_id, after_id, RECALCULATION_PAGE_SIZE
            )
            if not profile_ids:
                break

            for profile_id in profile_ids:
                reconcile = await engine.reconcile_segments(profile_id, organization_id, [segment])
                result.profiles_evaluated += 1
                result.entered += len(reconcile.entered)
                result.exited += len(reconcile.exited)
                if reconcile.failed:
                    result.failed += len(reconcile.failed)
                    # Rollback expired the loaded row
                    segment = await self.store.get_segment(segment_id)
                    if segment is None:
                        raise SegmentNotFoundError(segment_id)

            after_id = profile_ids[-1]

        result.member_count = await self.store.count_open_memberships(segment_id)
        await self.store.set_member_count(segment_id, result.member_count)
        result.execution_time_ms = _elapsed_ms(start_time)

        logger.info(
            "Recalculated segment %s: %d profiles, +%d/-%d, %d failed, %d members",
            segment_id, result.profiles_evaluated, result.entered, result.exited,
            result.failed, result.member_count,
        )
        return result

    async def get_members(
        self,
        segment_id: str,
        limit: int = DEFAULT_MEMBERS_LIMIT,
        cursor: Optional[str] = None,
    ) -> SegmentMembersPage:
        """
        Open memberships, newest entry first.

        The cursor is the membership ID of the first row of the next page.
        An unknown cursor yields an empty page.
        """
        segment = await self.store.get_segment(segment_id)
        if segment is None:
            raise SegmentNotFoundError(segment_id)

        limit = max(1, min(limit or DEFAULT_MEMBERS_LIMIT, MAX_MEMBERS_LIMIT))
        page = SegmentMembersPage(segment_id=segment_id)

        query = (
            select(SegmentMembership, Profile)
            .join(Profile, Profile.id == SegmentMembership.profile_id)
            .where(
                SegmentMembership.segment_id == segment_id,
                SegmentMembership.exited_at.is_(None),
            )
        )

        if cursor:
            anchor_result = await self.db.execute(
                select(SegmentMembership.entered_at).where(
                    SegmentMembership.id == cursor,
                    SegmentMembership.segment_id == segment_id,
                )
            )
            anchor = anchor_result.scalar_one_or_none()
            if anchor is None:
                return page
            query = query.where(
                or_(
                    SegmentMembership.entered_at < anchor,
                    and_(SegmentMembership.entered_at == anchor, SegmentMembership.id <= cursor),
                )
            )

        result = await self.db.execute(
            query.order_by(SegmentMembership.entered_at.desc(), SegmentMembership.id.desc()).limit(limit + 1)
        )
        rows = [(membership, profile) for membership, profile in result.all()]

        if len(rows) > limit:
            page.next_cursor = rows[limit][0].id
            rows = rows[:limit]
        page.members = rows
        return page

    async def preview(
        self,
        organization_id: str,
        conditions: ConditionGroup,
        sample_size: int = 20,
        now: Optional[datetime] = None,
    ) -> SegmentPreviewResult:
        """Evaluate a rule tree against the organization's profiles without writing."""
        start_time = datetime.now(timezone.utc)

        matched: List[str] = []
        scanned = 0
        after_id: Optional[str] = None

        while scanned < PREVIEW_PROFILE_LIMIT:
            page_size = min(RECALCULATION_PAGE_SIZE, PREVIEW_PROFILE_LIMIT - scanned)
            profiles = await self.store.get_profiles_page(organization_id, after_id, page_size)
            if not profiles:
                break

            for profile in profiles:
                events = [
                    EventRecord.from_model(e)
                    for e in await self.store.get_recent_events(profile.id, settings.EVENT_WINDOW_SIZE)
                ]
                memberships = await self.store.get_open_segment_ids(profile.id)
                evaluator = ConditionEvaluator(events=events, memberships=memberships, now=now)
                if evaluator.evaluate(ProfileSnapshot.from_model(profile), conditions):
                    matched.append(profile.id)

            scanned += len(profiles)
            after_id = profiles[-1].id

        return SegmentPreviewResult(
            estimated_count=len(matched),
            profiles_scanned=scanned,
            sample_profile_ids=matched[:sample_size],
            execution_time_ms=_elapsed_ms(start_time),
        )
