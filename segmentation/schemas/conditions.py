"""
Segment Condition Schemas

Rule trees are stored as loosely-typed JSON on Segment.conditions. They are
parsed into a closed set of pydantic models discriminated on ``type``:

- property: field path + comparison operator + value
- date: field path resolving to a timestamp + date operator
- event: behavioral occurrence with optional timeframe, count qualifier
  and nested property filters
- segment: membership in another segment

Groups carry an "and"/"or" operator and an ordered list of children.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Iterator, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)


class PropertyOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUALS = "greater_than_or_equals"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUALS = "less_than_or_equals"
    IS_SET = "is_set"
    IS_NOT_SET = "is_not_set"
    IN_LIST = "in_list"
    NOT_IN_LIST = "not_in_list"


class DateOperator(str, Enum):
    BEFORE = "before"
    AFTER = "after"
    BETWEEN = "between"
    IN_LAST_DAYS = "in_last_days"
    NOT_IN_LAST_DAYS = "not_in_last_days"
    ON_DATE = "on_date"


class EventOperator(str, Enum):
    HAS_DONE = "has_done"
    HAS_NOT_DONE = "has_not_done"


class CountOperator(str, Enum):
    AT_LEAST = "at_least"
    AT_MOST = "at_most"
    EXACTLY = "exactly"


class MembershipOperator(str, Enum):
    IS_MEMBER = "is_member"
    IS_NOT_MEMBER = "is_not_member"


# 100 years; anything wider is treated as a malformed timeframe
MAX_TIMEFRAME_DAYS = 36500


class TimeframeType(str, Enum):
    EVER = "ever"
    IN_LAST_DAYS = "in_last_days"
    BETWEEN = "between"


# Legacy and shorthand operator names accepted from stored rules
OPERATOR_ALIASES = {
    "eq": "equals",
    "equal": "equals",
    "neq": "not_equals",
    "not_equal": "not_equals",
    "gt": "greater_than",
    "gte": "greater_than_or_equals",
    "greater_than_or_equal": "greater_than_or_equals",
    "lt": "less_than",
    "lte": "less_than_or_equals",
    "less_than_or_equal": "less_than_or_equals",
    "is_empty": "is_not_set",
    "is_null": "is_not_set",
    "is_not_empty": "is_set",
    "is_not_null": "is_set",
    "in": "in_list",
    "not_in": "not_in_list",
    "before_date": "before",
    "after_date": "after",
    "in_last_n_days": "in_last_days",
}


def normalize_operator(value: Any) -> Any:
    """Lower-case, dash-to-underscore, then resolve aliases."""
    if not isinstance(value, str):
        return value
    op = value.strip().lower().replace("-", "_")
    return OPERATOR_ALIASES.get(op, op)


class _ConditionModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("operator", mode="before", check_fields=False)
    @classmethod
    def _normalize_operator(cls, v: Any) -> Any:
        return normalize_operator(v)


class PropertyCondition(_ConditionModel):
    """Compare a profile (or event) field against a value."""
    type: Literal["property"] = "property"
    field: str = Field(..., min_length=1, description="Dot path, e.g. 'email' or 'properties.plan'")
    operator: PropertyOperator
    value: Any = None


class DateCondition(_ConditionModel):
    """Compare a timestamp-valued field against one or two dates or a day count."""
    type: Literal["date"] = "date"
    field: str = Field(..., min_length=1)
    operator: DateOperator
    value: Any = None
    value2: Any = None


class EventTimeframe(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: TimeframeType = TimeframeType.EVER
    days: Optional[int] = Field(None, ge=0, le=MAX_TIMEFRAME_DAYS)
    start_date: Optional[datetime] = Field(None, alias="startDate")
    end_date: Optional[datetime] = Field(None, alias="endDate")

    @model_validator(mode="after")
    def _check_bounds(self) -> "EventTimeframe":
        if self.type == TimeframeType.IN_LAST_DAYS and self.days is None:
            raise ValueError("in_last_days timeframe requires 'days'")
        if self.type == TimeframeType.BETWEEN and (self.start_date is None or self.end_date is None):
            raise ValueError("between timeframe requires 'startDate' and 'endDate'")
        return self


class CountQualifier(_ConditionModel):
    operator: CountOperator
    value: int = Field(..., ge=0)


class EventCondition(_ConditionModel):
    """Behavioral condition over the profile's recent event window."""
    type: Literal["event"] = "event"
    event_name: str = Field(..., alias="eventName", min_length=1)
    operator: EventOperator
    timeframe: Optional[EventTimeframe] = None
    count: Optional[CountQualifier] = None
    properties: list[PropertyCondition] = Field(default_factory=list)


class SegmentRefCondition(_ConditionModel):
    """Membership in another segment, read from the precomputed membership set."""
    type: Literal["segment"] = "segment"
    segment_id: str = Field(..., alias="segmentId", min_length=1)
    operator: MembershipOperator


class MalformedCondition(BaseModel):
    """Placeholder for a stored rule node that failed validation. Never matches."""
    type: Literal["malformed"] = "malformed"
    raw: Any = None
    reason: str = ""


LeafCondition = Annotated[
    Union[PropertyCondition, DateCondition, EventCondition, SegmentRefCondition],
    Field(discriminator="type"),
]


def _condition_kind(node: Any) -> Optional[str]:
    if isinstance(node, dict):
        kind = node.get("type")
        if kind in (None, "group") and "conditions" in node:
            return "group"
        return kind
    if isinstance(node, ConditionGroup):
        return "group"
    return getattr(node, "type", None)


ConditionNode = Annotated[
    Union[
        Annotated["ConditionGroup", Tag("group")],
        Annotated[PropertyCondition, Tag("property")],
        Annotated[DateCondition, Tag("date")],
        Annotated[EventCondition, Tag("event")],
        Annotated[SegmentRefCondition, Tag("segment")],
        Annotated[MalformedCondition, Tag("malformed")],
    ],
    Discriminator(_condition_kind),
]


class ConditionGroup(BaseModel):
    """AND/OR group of conditions. An empty group never matches."""
    model_config = ConfigDict(extra="ignore")

    operator: Literal["and", "or"] = "and"
    conditions: list[ConditionNode] = Field(default_factory=list)

    @field_validator("operator", mode="before")
    @classmethod
    def _lower(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


ConditionGroup.model_rebuild()


def _request_condition_kind(node: Any) -> Optional[str]:
    kind = _condition_kind(node)
    # Malformed placeholders come only from the lenient parser
    return None if kind == "malformed" else kind


StrictConditionNode = Annotated[
    Union[
        Annotated["StrictConditionGroup", Tag("group")],
        Annotated[PropertyCondition, Tag("property")],
        Annotated[DateCondition, Tag("date")],
        Annotated[EventCondition, Tag("event")],
        Annotated[SegmentRefCondition, Tag("segment")],
    ],
    Discriminator(_request_condition_kind),
]


class StrictConditionGroup(ConditionGroup):
    """Rule tree from an API request: every node must validate."""

    conditions: list[StrictConditionNode] = Field(default_factory=list)


StrictConditionGroup.model_rebuild()

_LEAF_ADAPTER = TypeAdapter(LeafCondition)


# =============================================================================
# LENIENT PARSING OF STORED RULE TREES
# =============================================================================


def parse_condition_group(raw: Any) -> ConditionGroup:
    """
    Parse a stored rule tree without raising.

    Any node that fails validation becomes a MalformedCondition, so a bad
    sub-rule only makes its segment harder to match. A root that is not a
    valid group yields an empty (never matching) group.
    """
    if not isinstance(raw, dict):
        if raw is not None:
            logger.debug("Segment conditions root is not an object: %r", type(raw).__name__)
        return ConditionGroup(operator="and", conditions=[])

    node = _parse_group(raw)
    if isinstance(node, MalformedCondition):
        logger.debug("Malformed segment conditions root: %s", node.reason)
        return ConditionGroup(operator="and", conditions=[])
    return node


def _parse_group(raw: dict) -> Union[ConditionGroup, MalformedCondition]:
    operator = raw.get("operator", "and")
    if isinstance(operator, str):
        operator = operator.strip().lower()
    if operator not in ("and", "or"):
        return MalformedCondition(raw=raw, reason=f"unknown group operator {operator!r}")

    children = raw.get("conditions")
    if children is None:
        children = []
    if not isinstance(children, list):
        return MalformedCondition(raw=raw, reason="group 'conditions' must be a list")

    return ConditionGroup(operator=operator, conditions=[_parse_node(child) for child in children])


def _parse_node(raw: Any):
    if not isinstance(raw, dict):
        return MalformedCondition(raw=raw, reason="condition must be an object")

    if _condition_kind(raw) == "group":
        return _parse_group(raw)

    try:
        return _LEAF_ADAPTER.validate_python(raw)
    except ValidationError as e:
        reason = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        logger.debug("Malformed segment condition %r: %s", raw, reason)
        return MalformedCondition(raw=raw, reason=reason)


def iter_leaves(group: ConditionGroup) -> Iterator[Any]:
    """Yield every leaf condition in the tree, depth first."""
    for node in group.conditions:
        if isinstance(node, ConditionGroup):
            yield from iter_leaves(node)
        else:
            yield node


def references_event(group: ConditionGroup, event_name: str) -> bool:
    """Whether any event condition in the tree (nested groups included) names event_name."""
    return any(
        isinstance(leaf, EventCondition) and leaf.event_name == event_name
        for leaf in iter_leaves(group)
    )
