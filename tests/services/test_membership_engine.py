"""
Tests for the Membership Transition Engine.

Covers entry/exit transitions, idempotence, convergence, per-segment
failure isolation and event-restricted candidate selection.
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from segmentation.models import Segment, SegmentMembership
from segmentation.schemas.conditions import iter_leaves
from segmentation.services.segmentation.condition_evaluator import ConditionEvaluator
from segmentation.services.segmentation.membership_engine import MembershipTransitionEngine
from segmentation.services.segmentation.membership_store import MembershipStore

from tests.factories import ORGANIZATION_ID, EventConditionFactory, PropertyConditionFactory


async def open_rows(db: AsyncSession, profile_id: str, segment_id: str):
    result = await db.execute(
        select(SegmentMembership).where(
            SegmentMembership.profile_id == profile_id,
            SegmentMembership.segment_id == segment_id,
        ).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def member_count(db: AsyncSession, segment_id: str) -> int:
    result = await db.execute(select(Segment.member_count).where(Segment.id == segment_id))
    return result.scalar_one()


class TestEntryAndExit:
    """A profile moving into and out of a 'plan equals pro' segment."""

    @pytest.mark.asyncio
    async def test_entry_creates_open_row_and_dispatches(
        self, test_db, dispatcher, job_queue, make_profile, make_segment, make_flow
    ):
        segment = await make_segment()
        flow = await make_flow(trigger_segment_id=segment.id)
        profile = await make_profile(properties={"plan": "pro"})

        engine = MembershipTransitionEngine(test_db, dispatcher)
        result = await engine.reconcile(profile.id, ORGANIZATION_ID)

        assert result.entered == [segment.id]
        assert result.exited == []
        assert result.jobs_enqueued == 1

        rows = await open_rows(test_db, profile.id, segment.id)
        assert len(rows) == 1
        assert rows[0].exited_at is None
        assert await member_count(test_db, segment.id) == 1

        assert job_queue.jobs == [{
            "queue": "flow-trigger",
            "name": f"flow-{flow.id}-{profile.id}",
            "data": {
                "flowId": flow.id,
                "profileId": profile.id,
                "triggerType": "segment_entry",
                "triggerData": {"segmentId": segment.id},
            },
        }]

    @pytest.mark.asyncio
    async def test_exit_closes_row_and_keeps_history(
        self, test_db, dispatcher, job_queue, make_profile, make_segment, make_flow
    ):
        segment = await make_segment()
        exit_flow = await make_flow(trigger_segment_id=segment.id, trigger_type="segment_exit")
        profile = await make_profile(properties={"plan": "pro"})
        profile_id, segment_id = profile.id, segment.id

        engine = MembershipTransitionEngine(test_db, dispatcher)
        await engine.reconcile(profile_id, ORGANIZATION_ID)
        assert job_queue.jobs == []

        profile.properties = {"plan": "free"}
        await test_db.commit()

        result = await engine.reconcile(profile_id, ORGANIZATION_ID)

        assert result.entered == []
        assert result.exited == [segment_id]
        rows = await open_rows(test_db, profile_id, segment_id)
        assert len(rows) == 1
        assert rows[0].exited_at is not None
        assert await member_count(test_db, segment_id) == 0
        assert [job["data"]["flowId"] for job in job_queue.jobs] == [exit_flow.id]

    @pytest.mark.asyncio
    async def test_reentry_opens_a_new_row(self, test_db, dispatcher, make_profile, make_segment):
        segment = await make_segment()
        profile = await make_profile(properties={"plan": "pro"})
        profile_id, segment_id = profile.id, segment.id
        engine = MembershipTransitionEngine(test_db, dispatcher)

        await engine.reconcile(profile_id, ORGANIZATION_ID)
        profile.properties = {"plan": "free"}
        await test_db.commit()
        await engine.reconcile(profile_id, ORGANIZATION_ID)
        profile.properties = {"plan": "pro"}
        await test_db.commit()
        result = await engine.reconcile(profile_id, ORGANIZATION_ID)

        assert result.entered == [segment_id]
        rows = await open_rows(test_db, profile_id, segment_id)
        assert len(rows) == 2
        assert sum(1 for row in rows if row.exited_at is None) == 1
        assert await member_count(test_db, segment_id) == 1

    @pytest.mark.asyncio
    async def test_inactive_flows_and_other_segments_do_not_fire(
        self, test_db, dispatcher, job_queue, make_profile, make_segment, make_flow
    ):
        segment = await make_segment()
        other = await make_segment(conditions={"conditions": [PropertyConditionFactory(value="enterprise")]})
        await make_flow(trigger_segment_id=segment.id, status="paused")
        await make_flow(trigger_segment_id=other.id)
        await make_flow(trigger_segment_id=segment.id, trigger_type="segment_exit")
        profile = await make_profile(properties={"plan": "pro"})

        result = await MembershipTransitionEngine(test_db, dispatcher).reconcile(profile.id, ORGANIZATION_ID)

        assert result.entered == [segment.id]
        assert result.jobs_enqueued == 0
        assert job_queue.jobs == []


class TestLevelTriggered:
    """Reconcile is idempotent and converges."""

    @pytest.mark.asyncio
    async def test_second_reconcile_is_a_no_op(
        self, test_db, dispatcher, job_queue, make_profile, make_segment, make_flow
    ):
        segment = await make_segment()
        await make_flow(trigger_segment_id=segment.id)
        profile = await make_profile(properties={"plan": "pro"})
        engine = MembershipTransitionEngine(test_db, dispatcher)

        first = await engine.reconcile(profile.id, ORGANIZATION_ID)
        second = await engine.reconcile(profile.id, ORGANIZATION_ID)

        assert first.entered == [segment.id]
        assert second.entered == []
        assert second.exited == []
        assert len(job_queue.jobs) == 1
        assert await member_count(test_db, segment.id) == 1

    @pytest.mark.asyncio
    async def test_open_rows_match_rule_outcomes(self, test_db, dispatcher, make_profile, make_segment):
        pro = await make_segment()
        free = await make_segment(conditions={"conditions": [PropertyConditionFactory(value="free")]})
        empty = await make_segment(conditions={"operator": "and", "conditions": []})
        profile = await make_profile(properties={"plan": "free"})
        pro_id, free_id, empty_id, profile_id = pro.id, free.id, empty.id, profile.id

        engine = MembershipTransitionEngine(test_db, dispatcher)
        await engine.reconcile(profile_id, ORGANIZATION_ID)
        profile.properties = {"plan": "pro"}
        await test_db.commit()
        await engine.reconcile(profile_id, ORGANIZATION_ID)

        open_ids = await MembershipStore(test_db).get_open_segment_ids(profile_id)
        assert open_ids == {pro_id}
        assert free_id not in open_ids
        assert empty_id not in open_ids

    @pytest.mark.asyncio
    async def test_duplicate_open_is_a_no_op(self, test_db, make_profile, make_segment):
        segment = await make_segment()
        profile = await make_profile()
        store = MembershipStore(test_db)

        assert await store.open_membership(profile.id, segment.id) is True
        assert await store.open_membership(profile.id, segment.id) is False
        assert await member_count(test_db, segment.id) == 1

    @pytest.mark.asyncio
    async def test_close_without_open_row_is_a_no_op(self, test_db, make_profile, make_segment):
        segment = await make_segment()
        profile = await make_profile()

        assert await MembershipStore(test_db).close_membership(profile.id, segment.id) is False
        assert await member_count(test_db, segment.id) == 0


class TestSnapshotSemantics:
    @pytest.mark.asyncio
    async def test_segment_conditions_use_membership_at_start_of_pass(
        self, test_db, dispatcher, make_profile, make_segment
    ):
        base = await make_segment()
        derived = await make_segment(conditions={
            "conditions": [{"type": "segment", "segmentId": base.id, "operator": "is_member"}],
        })
        profile = await make_profile(properties={"plan": "pro"})
        base_id, derived_id, profile_id = base.id, derived.id, profile.id
        engine = MembershipTransitionEngine(test_db, dispatcher)

        first = await engine.reconcile(profile_id, ORGANIZATION_ID)
        assert first.entered == [base_id]

        second = await engine.reconcile(profile_id, ORGANIZATION_ID)
        assert second.entered == [derived_id]


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_missing_profile_is_a_no_op(self, test_db, dispatcher, job_queue, make_segment):
        await make_segment()

        result = await MembershipTransitionEngine(test_db, dispatcher).reconcile("no-such-profile", ORGANIZATION_ID)

        assert result.entered == []
        assert result.exited == []
        assert job_queue.jobs == []

    @pytest.mark.asyncio
    async def test_profile_from_other_organization_is_a_no_op(self, test_db, dispatcher, make_profile, make_segment):
        await make_segment()
        profile = await make_profile(organization_id="org-other", properties={"plan": "pro"})

        result = await MembershipTransitionEngine(test_db, dispatcher).reconcile(profile.id, ORGANIZATION_ID)

        assert result.entered == []

    @pytest.mark.asyncio
    async def test_write_failure_on_one_segment_does_not_stop_the_batch(
        self, test_db, dispatcher, make_profile, make_segment
    ):
        broken = await make_segment()
        healthy = await make_segment()
        profile = await make_profile(properties={"plan": "pro"})
        broken_id, healthy_id, profile_id = broken.id, healthy.id, profile.id

        original = MembershipStore.open_membership

        async def flaky_open(self, profile_id, segment_id):
            if segment_id == broken_id:
                raise OperationalError("INSERT INTO segment_memberships", {}, Exception("database is locked"))
            return await original(self, profile_id, segment_id)

        with patch.object(MembershipStore, "open_membership", flaky_open):
            result = await MembershipTransitionEngine(test_db, dispatcher).reconcile(profile_id, ORGANIZATION_ID)

        assert result.failed == [broken_id]
        assert result.entered == [healthy_id]

        # The next pass picks up the failed segment
        retry = await MembershipTransitionEngine(test_db, dispatcher).reconcile(profile_id, ORGANIZATION_ID)
        assert retry.entered == [broken_id]
        assert retry.failed == []

    @pytest.mark.asyncio
    async def test_dispatch_failure_is_recorded_and_membership_kept(
        self, test_db, dispatcher, job_queue, make_profile, make_segment, make_flow
    ):
        segment = await make_segment()
        failing = await make_flow(trigger_segment_id=segment.id)
        working = await make_flow(trigger_segment_id=segment.id)
        job_queue.fail_flow_ids.add(failing.id)
        profile = await make_profile(properties={"plan": "pro"})

        result = await MembershipTransitionEngine(test_db, dispatcher).reconcile(profile.id, ORGANIZATION_ID)

        assert result.entered == [segment.id]
        assert failing.id in result.dispatch_error
        assert result.jobs_enqueued == 1
        assert [job["data"]["flowId"] for job in job_queue.jobs] == [working.id]
        assert len(await open_rows(test_db, profile.id, segment.id)) == 1

    @pytest.mark.asyncio
    async def test_flow_lookup_failure_is_recorded_and_membership_kept(
        self, test_db, dispatcher, job_queue, make_profile, make_segment, make_flow
    ):
        segment = await make_segment()
        await make_flow(trigger_segment_id=segment.id)
        profile = await make_profile(properties={"plan": "pro"})
        segment_id, profile_id = segment.id, profile.id

        async def broken_lookup(self, organization_id):
            raise OperationalError("SELECT flows", {}, Exception("connection reset"))

        with patch.object(MembershipStore, "get_segment_trigger_flows", broken_lookup):
            result = await MembershipTransitionEngine(test_db, dispatcher).reconcile(profile_id, ORGANIZATION_ID)

        assert result.entered == [segment_id]
        assert result.jobs_enqueued == 0
        assert "OperationalError" in result.dispatch_error
        assert job_queue.jobs == []
        assert len(await open_rows(test_db, profile_id, segment_id)) == 1

    @pytest.mark.asyncio
    async def test_out_of_range_day_windows_do_not_stop_the_batch(
        self, test_db, dispatcher, make_profile, make_segment
    ):
        healthy = await make_segment()
        infinite = await make_segment(conditions={"conditions": [
            {"type": "date", "field": "created_at", "operator": "in_last_days", "value": "inf"},
        ]})
        huge_exit = await make_segment(conditions={"conditions": [
            {"type": "date", "field": "created_at", "operator": "not_in_last_days", "value": 1e10},
        ]})
        huge_timeframe = await make_segment(conditions={"conditions": [
            {**EventConditionFactory(), "timeframe": {"type": "in_last_days", "days": 10**6}},
        ]})
        profile = await make_profile(properties={"plan": "pro"})

        result = await MembershipTransitionEngine(test_db, dispatcher).reconcile(profile.id, ORGANIZATION_ID)

        assert result.entered == [healthy.id]
        assert result.failed == []
        for segment in (infinite, huge_exit, huge_timeframe):
            assert await open_rows(test_db, profile.id, segment.id) == []

    @pytest.mark.asyncio
    async def test_evaluation_error_on_one_segment_does_not_stop_the_batch(
        self, test_db, dispatcher, make_profile, make_segment
    ):
        broken = await make_segment(conditions={"conditions": [PropertyConditionFactory(field="explodes")]})
        healthy = await make_segment()
        profile = await make_profile(properties={"plan": "pro"})
        original = ConditionEvaluator.evaluate

        def exploding_evaluate(self, snapshot, group):
            if any(getattr(leaf, "field", None) == "explodes" for leaf in iter_leaves(group)):
                raise RuntimeError("boom")
            return original(self, snapshot, group)

        with patch.object(ConditionEvaluator, "evaluate", exploding_evaluate):
            result = await MembershipTransitionEngine(test_db, dispatcher).reconcile(profile.id, ORGANIZATION_ID)

        assert result.failed == [broken.id]
        assert result.entered == [healthy.id]


class TestEventRestrictedReconcile:
    @pytest.mark.asyncio
    async def test_only_segments_referencing_the_event_are_candidates(
        self, test_db, dispatcher, make_profile, make_segment, make_event
    ):
        buyers = await make_segment(conditions={"conditions": [EventConditionFactory()]})
        pros = await make_segment()
        profile = await make_profile(properties={"plan": "pro"})
        await make_event(profile_id=profile.id)

        result = await MembershipTransitionEngine(test_db, dispatcher).reconcile_for_event(
            profile.id, ORGANIZATION_ID, "Placed Order"
        )

        assert result.entered == [buyers.id]
        assert pros.id not in result.entered

    @pytest.mark.asyncio
    async def test_unrelated_event_changes_nothing(self, test_db, dispatcher, make_profile, make_segment, make_event):
        await make_segment(conditions={"conditions": [EventConditionFactory()]})
        profile = await make_profile()
        await make_event(profile_id=profile.id, name="Viewed Product")

        result = await MembershipTransitionEngine(test_db, dispatcher).reconcile_for_event(
            profile.id, ORGANIZATION_ID, "Viewed Product"
        )

        assert result.entered == []
        assert result.exited == []

    @pytest.mark.asyncio
    async def test_event_window_is_bounded(self, test_db, dispatcher, make_profile, make_segment, make_event):
        segment = await make_segment(conditions={"conditions": [
            EventConditionFactory(count={"operator": "at_least", "value": 3}),
        ]})
        profile = await make_profile()
        now = datetime.now(timezone.utc)
        for i in range(3):
            await make_event(profile_id=profile.id, timestamp=now - timedelta(minutes=i))

        narrow = MembershipTransitionEngine(test_db, dispatcher, event_window=2)
        assert (await narrow.reconcile_for_event(profile.id, ORGANIZATION_ID, "Placed Order")).entered == []

        wide = MembershipTransitionEngine(test_db, dispatcher, event_window=10)
        assert (await wide.reconcile_for_event(profile.id, ORGANIZATION_ID, "Placed Order")).entered == [segment.id]
