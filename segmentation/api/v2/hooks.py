"""
Reconcile hooks.

Called by the profile CRUD layer and the event-ingestion path after a
write. The reconcile pass is handed to the worker pool; the request
returns 202 immediately unless the caller asks to wait for the result.
"""

import logging

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse

from segmentation.api.deps import Worker
from segmentation.schemas.segmentation import (
    EventTrackedHook,
    HookAccepted,
    ProfileChangedHook,
    ReconcileResultResponse,
)
from segmentation.services.segmentation.membership_engine import ReconcileResult

logger = logging.getLogger(__name__)

router = APIRouter()


def _result_response(result: ReconcileResult) -> JSONResponse:
    body = ReconcileResultResponse(
        profile_id=result.profile_id,
        organization_id=result.organization_id,
        entered=result.entered,
        exited=result.exited,
        failed=result.failed,
        jobs_enqueued=result.jobs_enqueued,
        dispatch_error=result.dispatch_error,
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump())


def _accepted_response(profile_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=HookAccepted(profile_id=profile_id).model_dump(),
    )


@router.post(
    "/profile-changed",
    status_code=status.HTTP_202_ACCEPTED,
    responses={200: {"model": ReconcileResultResponse}, 202: {"model": HookAccepted}},
)
async def profile_changed(
    payload: ProfileChangedHook,
    worker: Worker,
    wait: bool = Query(False, description="Wait for the reconcile pass and return its result"),
):
    """Re-evaluate every active segment of the organization for one profile."""
    future = await worker.submit_profile_change(payload.profile_id, payload.organization_id)
    if not wait:
        return _accepted_response(payload.profile_id)
    return _result_response(await future)


@router.post(
    "/event-tracked",
    status_code=status.HTTP_202_ACCEPTED,
    responses={200: {"model": ReconcileResultResponse}, 202: {"model": HookAccepted}},
)
async def event_tracked(
    payload: EventTrackedHook,
    worker: Worker,
    wait: bool = Query(False, description="Wait for the reconcile pass and return its result"),
):
    """Re-evaluate the segments whose rules reference the tracked event."""
    future = await worker.submit_event(payload.profile_id, payload.organization_id, payload.event_name)
    if not wait:
        return _accepted_response(payload.profile_id)
    return _result_response(await future)
