"""
Segment API Endpoints

Includes:
- Member listing with cursor pagination
- Full-population recalculation
- Rule preview (no writes)

Segment CRUD lives in the marketing API; these endpoints only read and
reconcile existing segments.
"""

from typing import Optional

from fastapi import APIRouter, Query

from segmentation.api.deps import DbSession, Dispatcher
from segmentation.schemas.segmentation import (
    SegmentMemberResponse,
    SegmentMembersResponse,
    SegmentPreviewRequest,
    SegmentPreviewResponse,
    SegmentRecalculationResponse,
)
from segmentation.services.segmentation.segment_service import (
    DEFAULT_MEMBERS_LIMIT,
    MAX_MEMBERS_LIMIT,
    SegmentService,
)

router = APIRouter()


@router.post("/preview", response_model=SegmentPreviewResponse)
async def preview_segment(request: SegmentPreviewRequest, db: DbSession):
    """Estimate how many profiles a rule tree would match."""
    service = SegmentService(db)
    result = await service.preview(
        request.organization_id,
        request.conditions,
        sample_size=request.sample_size,
    )
    return SegmentPreviewResponse(
        estimated_count=result.estimated_count,
        profiles_scanned=result.profiles_scanned,
        sample_profile_ids=result.sample_profile_ids,
        execution_time_ms=result.execution_time_ms,
    )


@router.get("/{segment_id}/members", response_model=SegmentMembersResponse)
async def list_segment_members(
    segment_id: str,
    db: DbSession,
    limit: int = Query(DEFAULT_MEMBERS_LIMIT, ge=1, le=MAX_MEMBERS_LIMIT),
    cursor: Optional[str] = None,
):
    """Current members, newest entry first."""
    page = await SegmentService(db).get_members(segment_id, limit=limit, cursor=cursor)
    return SegmentMembersResponse(
        segment_id=segment_id,
        items=[
            SegmentMemberResponse(
                profile_id=profile.id,
                email=profile.email,
                external_id=profile.external_id,
                first_name=profile.first_name,
                last_name=profile.last_name,
                entered_at=membership.entered_at,
            )
            for membership, profile in page.members
        ],
        next_cursor=page.next_cursor,
    )


@router.post("/{segment_id}/recalculate", response_model=SegmentRecalculationResponse)
async def recalculate_segment(segment_id: str, db: DbSession, dispatcher: Dispatcher):
    """Reconcile the segment for every profile of its organization."""
    result = await SegmentService(db, dispatcher).recalculate_segment(segment_id)
    return SegmentRecalculationResponse(
        segment_id=result.segment_id,
        profiles_evaluated=result.profiles_evaluated,
        entered=result.entered,
        exited=result.exited,
        failed=result.failed,
        member_count=result.member_count,
        skipped=result.skipped,
        execution_time_ms=result.execution_time_ms,
    )
