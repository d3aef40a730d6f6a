"""
Membership Transition Engine

Recomputes a profile's segment memberships and persists the difference:

1. Load the profile snapshot, its newest-first event window and its open
   memberships (one consistent snapshot for the whole pass)
2. Evaluate every candidate segment against that snapshot
3. Diff evaluator output against the open rows of the candidates
4. Apply entry/exit writes, each committed on its own
5. Hand the diff to the trigger dispatcher

Reconcile is level-triggered: running it again with unchanged inputs
yields no transitions, and a failed write is corrected on the next pass.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from segmentation.config import settings
from segmentation.exceptions import DispatchError, JobQueueError
from segmentation.models import Segment
from segmentation.schemas.conditions import ConditionGroup, parse_condition_group, references_event
from segmentation.services.segmentation.condition_evaluator import (
    ConditionEvaluator,
    EventRecord,
    ProfileSnapshot,
)
from segmentation.services.segmentation.membership_store import MembershipStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of one reconcile pass for one profile."""

    profile_id: str
    organization_id: str
    entered: List[str] = field(default_factory=list)
    exited: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    jobs_enqueued: int = 0
    dispatch_error: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.entered or self.exited)


class MembershipTransitionEngine:
    """
    Reconciles segment membership for one profile at a time.

    The dispatcher is injected once at process start; the engine itself
    holds no state between passes.
    """

    def __init__(
        self,
        db: AsyncSession,
        dispatcher,
        event_window: int = settings.EVENT_WINDOW_SIZE,
        now: Optional[datetime] = None,
    ):
        self.db = db
        self.store = MembershipStore(db)
        self.dispatcher = dispatcher
        self.event_window = event_window
        self.now = now

    async def reconcile(self, profile_id: str, organization_id: str) -> ReconcileResult:
        """Profile-change hook: evaluate every active segment of the organization."""
        segments = await self.store.get_active_segments(organization_id)
        return await self.reconcile_segments(profile_id, organization_id, segments)

    async def reconcile_for_event(
        self, profile_id: str, organization_id: str, event_name: str
    ) -> ReconcileResult:
        """Event-tracked hook: evaluate only segments whose rules reference event_name."""
        segments = await self.store.get_active_segments(organization_id)
        candidates = [
            segment for segment in segments
            if references_event(parse_condition_group(segment.conditions), event_name)
        ]
        logger.debug(
            "Event %s for profile %s touches %d of %d active segments",
            event_name, profile_id, len(candidates), len(segments),
        )
        return await self.reconcile_segments(profile_id, organization_id, candidates)

    async def reconcile_segments(
        self,
        profile_id: str,
        organization_id: str,
        segments: Sequence[Segment],
    ) -> ReconcileResult:
        result = ReconcileResult(profile_id=profile_id, organization_id=organization_id)

        # Plain values only from here on; a rollback expires loaded ORM rows
        rules: List[Tuple[str, ConditionGroup]] = [
            (segment.id, parse_condition_group(segment.conditions)) for segment in segments
        ]
        if not rules:
            return result

        profile = await self.store.get_profile(profile_id)
        if profile is None or profile.organization_id != organization_id:
            logger.info("Profile %s not found in organization %s, skipping reconcile", profile_id, organization_id)
            return result

        snapshot = ProfileSnapshot.from_model(profile)
        events = [EventRecord.from_model(e) for e in await self.store.get_recent_events(profile_id, self.event_window)]
        open_segment_ids = await self.store.get_open_segment_ids(profile_id)

        evaluator = ConditionEvaluator(events=events, memberships=open_segment_ids, now=self.now)

        to_enter: List[str] = []
        to_exit: List[str] = []
        for segment_id, group in rules:
            try:
                is_member = evaluator.evaluate(snapshot, group)
            except Exception:
                result.failed.append(segment_id)
                logger.error(
                    "Failed to evaluate segment %s for profile %s",
                    segment_id, profile_id, exc_info=True,
                )
                continue
            was_member = segment_id in open_segment_ids
            if is_member and not was_member:
                to_enter.append(segment_id)
            elif was_member and not is_member:
                to_exit.append(segment_id)

        for segment_id in to_enter:
            try:
                if await self.store.open_membership(profile_id, segment_id):
                    result.entered.append(segment_id)
            except SQLAlchemyError:
                await self.db.rollback()
                result.failed.append(segment_id)
                logger.error(
                    "Failed to open membership for profile %s in segment %s",
                    profile_id, segment_id, exc_info=True,
                )

        for segment_id in to_exit:
            try:
                if await self.store.close_membership(profile_id, segment_id):
                    result.exited.append(segment_id)
            except SQLAlchemyError:
                await self.db.rollback()
                result.failed.append(segment_id)
                logger.error(
                    "Failed to close membership for profile %s in segment %s",
                    profile_id, segment_id, exc_info=True,
                )

        if result.entered or result.exited:
            logger.info(
                "Profile %s entered %s, exited %s",
                profile_id, result.entered, result.exited,
            )
            await self._dispatch(result)

        return result

    async def _dispatch(self, result: ReconcileResult) -> None:
        # Membership is already committed; a failed enqueue does not undo it
        try:
            jobs = await self.dispatcher.dispatch(
                self.db,
                result.profile_id,
                result.organization_id,
                result.entered,
                result.exited,
            )
            result.jobs_enqueued = len(jobs)
        except DispatchError as e:
            result.jobs_enqueued = e.enqueued
            result.dispatch_error = str(e)
            logger.error("Trigger dispatch failed for profile %s: %s", result.profile_id, e)
        except JobQueueError as e:
            result.dispatch_error = str(e)
            logger.error("Trigger dispatch failed for profile %s: %s", result.profile_id, e)
        except SQLAlchemyError as e:
            await self.db.rollback()
            result.dispatch_error = f"Flow lookup failed: {type(e).__name__}"
            logger.error(
                "Trigger dispatch failed for profile %s: flow lookup error",
                result.profile_id, exc_info=True,
            )
