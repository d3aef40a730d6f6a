"""
Tests for rule tree parsing.

Stored rules are parsed leniently (bad nodes become MalformedCondition);
rules submitted through the API are validated strictly.
"""

import pytest
from pydantic import ValidationError

from segmentation.schemas.conditions import (
    ConditionGroup,
    DateCondition,
    EventCondition,
    MalformedCondition,
    PropertyCondition,
    PropertyOperator,
    SegmentRefCondition,
    iter_leaves,
    normalize_operator,
    parse_condition_group,
    references_event,
)
from segmentation.schemas.segmentation import FlowTriggerJob, SegmentPreviewRequest, SegmentTriggerData


class TestLenientParsing:
    def test_parses_each_condition_type(self):
        group = parse_condition_group({
            "operator": "AND",
            "conditions": [
                {"type": "property", "field": "plan", "operator": "equals", "value": "pro"},
                {"type": "date", "field": "created_at", "operator": "in_last_days", "value": 30},
                {"type": "event", "eventName": "Signed Up", "operator": "has_done"},
                {"type": "segment", "segmentId": "seg-1", "operator": "is_member"},
            ],
        })
        assert group.operator == "and"
        kinds = [type(node) for node in group.conditions]
        assert kinds == [PropertyCondition, DateCondition, EventCondition, SegmentRefCondition]

    def test_non_dict_root_is_empty_group(self):
        assert parse_condition_group(None).conditions == []
        assert parse_condition_group(["not", "a", "group"]).conditions == []

    def test_bad_leaf_becomes_malformed(self):
        group = parse_condition_group({
            "operator": "or",
            "conditions": [
                {"type": "property", "operator": "equals", "value": "x"},
                "not-an-object",
                {"type": "teleport"},
            ],
        })
        assert all(isinstance(node, MalformedCondition) for node in group.conditions)
        assert "field" in group.conditions[0].reason

    def test_bad_nested_group_becomes_malformed(self):
        group = parse_condition_group({
            "operator": "and",
            "conditions": [{"operator": "nand", "conditions": []}],
        })
        assert isinstance(group.conditions[0], MalformedCondition)

    def test_missing_timeframe_days_is_malformed(self):
        group = parse_condition_group({
            "conditions": [
                {"type": "event", "eventName": "Opened Email", "operator": "has_done",
                 "timeframe": {"type": "in_last_days"}},
            ],
        })
        assert isinstance(group.conditions[0], MalformedCondition)

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("eq", "equals"),
            ("NOT-EQUAL", "not_equals"),
            ("gte", "greater_than_or_equals"),
            ("is_empty", "is_not_set"),
            ("not_in", "not_in_list"),
            ("contains", "contains"),
        ],
    )
    def test_operator_aliases(self, raw, expected):
        assert normalize_operator(raw) == expected

    def test_alias_applied_during_parsing(self):
        group = parse_condition_group({"conditions": [{"type": "property", "field": "age", "operator": "lt", "value": 3}]})
        assert group.conditions[0].operator == PropertyOperator.LESS_THAN


class TestEventReferences:
    def test_references_event_in_nested_group(self):
        group = parse_condition_group({
            "operator": "and",
            "conditions": [
                {"type": "property", "field": "plan", "operator": "equals", "value": "pro"},
                {"operator": "or", "conditions": [
                    {"type": "event", "eventName": "Placed Order", "operator": "has_done"},
                ]},
            ],
        })
        assert references_event(group, "Placed Order") is True
        assert references_event(group, "Viewed Product") is False

    def test_iter_leaves_is_depth_first(self):
        group = parse_condition_group({
            "conditions": [
                {"type": "property", "field": "a", "operator": "is_set"},
                {"conditions": [{"type": "property", "field": "b", "operator": "is_set"}]},
                {"type": "property", "field": "c", "operator": "is_set"},
            ],
        })
        assert [leaf.field for leaf in iter_leaves(group)] == ["a", "b", "c"]


class TestStrictValidation:
    def test_preview_request_rejects_unknown_condition_type(self):
        with pytest.raises(ValidationError):
            SegmentPreviewRequest(
                organization_id="org-1",
                conditions={"operator": "and", "conditions": [{"type": "teleport"}]},
            )

    def test_preview_request_rejects_unknown_operator(self):
        with pytest.raises(ValidationError):
            SegmentPreviewRequest(
                organization_id="org-1",
                conditions={"operator": "and", "conditions": [
                    {"type": "property", "field": "plan", "operator": "resembles", "value": "pro"},
                ]},
            )

    def test_preview_request_accepts_valid_tree(self):
        request = SegmentPreviewRequest(
            organization_id="org-1",
            conditions={"operator": "or", "conditions": [
                {"type": "property", "field": "plan", "operator": "eq", "value": "pro"},
                {"operator": "and", "conditions": [
                    {"type": "event", "eventName": "Placed Order", "operator": "has_done",
                     "count": {"operator": "at_least", "value": 2}},
                ]},
            ]},
        )
        assert isinstance(request.conditions, ConditionGroup)
        assert isinstance(request.conditions.conditions[1], ConditionGroup)

    @pytest.mark.parametrize(
        "node",
        [
            {"type": "malformed", "reason": "hand-written"},
            {"operator": "and", "conditions": [{"type": "malformed"}]},
        ],
    )
    def test_preview_request_rejects_malformed_placeholder(self, node):
        with pytest.raises(ValidationError):
            SegmentPreviewRequest(
                organization_id="org-1",
                conditions={"operator": "and", "conditions": [node]},
            )

    def test_stored_rules_still_accept_malformed_placeholder(self):
        group = ConditionGroup.model_validate({"conditions": [{"type": "malformed", "reason": "legacy"}]})
        assert isinstance(group.conditions[0], MalformedCondition)


class TestFlowTriggerJob:
    def test_wire_format(self):
        job = FlowTriggerJob(
            flow_id="flow-1",
            profile_id="p-1",
            trigger_type="segment_entry",
            trigger_data=SegmentTriggerData(segment_id="seg-1"),
        )
        assert job.job_name == "flow-flow-1-p-1"
        assert job.to_payload() == {
            "flowId": "flow-1",
            "profileId": "p-1",
            "triggerType": "segment_entry",
            "triggerData": {"segmentId": "seg-1"},
        }
