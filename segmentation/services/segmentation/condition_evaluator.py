"""
Condition Evaluator

Pure, in-memory evaluation of a segment rule tree against one profile:

    (profile snapshot, event window, current memberships, rule tree) -> bool

No I/O and no side effects. Missing fields never raise; each operator
defines what an absent value means. All date arithmetic is done in UTC,
and naive datetimes are read as UTC.

Event count semantics (has_not_done is always the negation of has_done
under the same qualifier):

    qualifier    has_done            has_not_done
    ---------    ----------------    -----------------------
    (none)       count > 0           count == 0
    at_least n   count >= n          count < n
    at_most n    0 < count <= n      count == 0 or count > n
    exactly n    count == n          count != n

Segment conditions read the caller-supplied membership set; the referenced
segment is never re-evaluated, so segment-of-segment rules are as fresh as
that segment's last reconcile.
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from segmentation.schemas.conditions import (
    ConditionGroup,
    CountOperator,
    CountQualifier,
    DateCondition,
    DateOperator,
    EventCondition,
    EventOperator,
    EventTimeframe,
    MembershipOperator,
    PropertyCondition,
    PropertyOperator,
    SegmentRefCondition,
    TimeframeType,
)


class _Missing:
    """Sentinel for a field path that does not resolve."""

    def __repr__(self) -> str:
        return "<missing>"


MISSING = _Missing()

# Bounds for day windows too wide for timedelta arithmetic
EARLIEST = datetime.min.replace(tzinfo=timezone.utc)
LATEST = datetime.max.replace(tzinfo=timezone.utc)

# Standard profile fields addressable without the "properties." prefix
STANDARD_FIELDS = frozenset({
    "id",
    "email",
    "externalId", "external_id",
    "phone",
    "firstName", "first_name",
    "lastName", "last_name",
    "createdAt", "created_at",
    "updatedAt", "updated_at",
    "properties",
})


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class ProfileSnapshot:
    """Read-only view of a profile taken at the start of a reconcile pass."""

    id: str
    organization_id: str
    email: Optional[str] = None
    external_id: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    properties: Mapping[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, profile) -> "ProfileSnapshot":
        return cls(
            id=profile.id,
            organization_id=profile.organization_id,
            email=profile.email,
            external_id=profile.external_id,
            phone=profile.phone,
            first_name=profile.first_name,
            last_name=profile.last_name,
            properties=copy.deepcopy(profile.properties or {}),
            created_at=profile.created_at,
            updated_at=profile.updated_at,
        )

    def as_view(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "externalId": self.external_id,
            "external_id": self.external_id,
            "phone": self.phone,
            "firstName": self.first_name,
            "first_name": self.first_name,
            "lastName": self.last_name,
            "last_name": self.last_name,
            "createdAt": self.created_at,
            "created_at": self.created_at,
            "updatedAt": self.updated_at,
            "updated_at": self.updated_at,
            "properties": self.properties or {},
        }


@dataclass(frozen=True)
class EventRecord:
    """One event from the profile's recent window."""

    name: str
    timestamp: datetime
    properties: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "timestamp", as_utc(self.timestamp))

    @classmethod
    def from_model(cls, event) -> "EventRecord":
        return cls(name=event.name, timestamp=event.timestamp, properties=event.properties or {})


# =============================================================================
# FIELD RESOLUTION AND COERCION
# =============================================================================


def resolve_path(data: Any, path: str) -> Any:
    """
    Walk a dot path through nested mappings.

    At each level a literal key equal to the remaining path wins over
    walking, so flattened keys like "address.city" still resolve.
    """
    parts = path.split(".")
    current = data
    for i, part in enumerate(parts):
        if not isinstance(current, Mapping):
            return MISSING
        remaining = ".".join(parts[i:])
        if remaining in current:
            return current[remaining]
        if part not in current:
            return MISSING
        current = current[part]
    return current


def resolve_profile_field(view: Mapping[str, Any], field_path: str) -> Any:
    head = field_path.split(".", 1)[0]
    if head in STANDARD_FIELDS:
        return resolve_path(view, field_path)
    return resolve_path(view.get("properties") or {}, field_path)


def to_number(value: Any) -> Optional[float]:
    """Coerce to float; None when the value is not numeric."""
    if value is MISSING or value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        raw = value
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
    else:
        return None
    try:
        number = float(raw)
    except (OverflowError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def parse_instant(value: Any) -> Optional[datetime]:
    """Parse a datetime, date or ISO-8601 string into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    try:
        return as_utc(parsed)
    except OverflowError:
        # Offset pushes the instant outside the datetime range
        return None


def values_equal(left: Any, right: Any) -> bool:
    if left is MISSING or right is MISSING:
        return False
    if isinstance(left, str) and isinstance(right, str):
        return left.casefold() == right.casefold()
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    return left == right


def _is_set(value: Any) -> bool:
    return value is not MISSING and value is not None and value != ""


def _contains(field_value: Any, expected: Any) -> Optional[bool]:
    if isinstance(field_value, str) and isinstance(expected, str):
        return expected.casefold() in field_value.casefold()
    if isinstance(field_value, (list, tuple)):
        return any(values_equal(item, expected) for item in field_value)
    return None


def compare_values(field_value: Any, operator: PropertyOperator, expected: Any) -> bool:
    """Apply a property operator. Unresolvable or mistyped operands give False."""
    if operator == PropertyOperator.EQUALS:
        return values_equal(field_value, expected)
    if operator == PropertyOperator.NOT_EQUALS:
        return not values_equal(field_value, expected)

    if operator == PropertyOperator.CONTAINS:
        return _contains(field_value, expected) is True
    if operator == PropertyOperator.NOT_CONTAINS:
        found = _contains(field_value, expected)
        return True if found is None else not found

    if operator in (PropertyOperator.STARTS_WITH, PropertyOperator.ENDS_WITH):
        if not (isinstance(field_value, str) and isinstance(expected, str)):
            return False
        if operator == PropertyOperator.STARTS_WITH:
            return field_value.casefold().startswith(expected.casefold())
        return field_value.casefold().endswith(expected.casefold())

    if operator in (
        PropertyOperator.GREATER_THAN,
        PropertyOperator.GREATER_THAN_OR_EQUALS,
        PropertyOperator.LESS_THAN,
        PropertyOperator.LESS_THAN_OR_EQUALS,
    ):
        left, right = to_number(field_value), to_number(expected)
        if left is None or right is None:
            return False
        if operator == PropertyOperator.GREATER_THAN:
            return left > right
        if operator == PropertyOperator.GREATER_THAN_OR_EQUALS:
            return left >= right
        if operator == PropertyOperator.LESS_THAN:
            return left < right
        return left <= right

    if operator == PropertyOperator.IS_SET:
        return _is_set(field_value)
    if operator == PropertyOperator.IS_NOT_SET:
        return not _is_set(field_value)

    if operator in (PropertyOperator.IN_LIST, PropertyOperator.NOT_IN_LIST):
        if not isinstance(expected, (list, tuple)):
            return False
        found = any(values_equal(field_value, item) for item in expected)
        return found if operator == PropertyOperator.IN_LIST else not found

    return False


def event_count_matches(operator: EventOperator, count: int, qualifier: Optional[CountQualifier]) -> bool:
    if qualifier is None:
        done = count > 0
    elif qualifier.operator == CountOperator.AT_LEAST:
        done = count >= qualifier.value
    elif qualifier.operator == CountOperator.AT_MOST:
        done = 0 < count <= qualifier.value
    else:
        done = count == qualifier.value
    return done if operator == EventOperator.HAS_DONE else not done


# =============================================================================
# EVALUATOR
# =============================================================================


class ConditionEvaluator:
    """
    Evaluates rule trees for a single profile.

    Holds the event window, the membership snapshot and the reference
    time, so one instance can evaluate every candidate segment of a
    reconcile pass against the same inputs.
    """

    def __init__(
        self,
        events: Iterable[EventRecord] = (),
        memberships: Iterable[str] = (),
        now: Optional[datetime] = None,
    ):
        self.events = list(events)
        self.memberships = frozenset(memberships)
        self.now = as_utc(now) if now else datetime.now(timezone.utc)

    def evaluate(self, profile: ProfileSnapshot, group: ConditionGroup) -> bool:
        return self._evaluate_group(profile.as_view(), group)

    def _evaluate_group(self, view: Mapping[str, Any], group: ConditionGroup) -> bool:
        if not group.conditions:
            return False
        results = (self._evaluate_node(view, node) for node in group.conditions)
        if group.operator == "or":
            return any(results)
        return all(results)

    def _evaluate_node(self, view: Mapping[str, Any], node: Any) -> bool:
        if isinstance(node, ConditionGroup):
            return self._evaluate_group(view, node)
        if isinstance(node, PropertyCondition):
            return compare_values(resolve_profile_field(view, node.field), node.operator, node.value)
        if isinstance(node, DateCondition):
            return self._evaluate_date(view, node)
        if isinstance(node, EventCondition):
            return self._evaluate_event(node)
        if isinstance(node, SegmentRefCondition):
            is_member = node.segment_id in self.memberships
            return is_member if node.operator == MembershipOperator.IS_MEMBER else not is_member
        # MalformedCondition
        return False

    def _days_ago(self, days: float) -> datetime:
        """now - days, clamped to the representable range."""
        try:
            return self.now - timedelta(days=days)
        except (OverflowError, ValueError):
            return EARLIEST if days > 0 else LATEST

    def _evaluate_date(self, view: Mapping[str, Any], condition: DateCondition) -> bool:
        instant = parse_instant(resolve_profile_field(view, condition.field))
        if instant is None:
            return False

        op = condition.operator
        if op in (DateOperator.IN_LAST_DAYS, DateOperator.NOT_IN_LAST_DAYS):
            days = to_number(condition.value)
            if days is None:
                return False
            cutoff = self._days_ago(days)
            if op == DateOperator.IN_LAST_DAYS:
                return instant >= cutoff
            return instant < cutoff

        reference = parse_instant(condition.value)
        if reference is None:
            return False
        if op == DateOperator.BEFORE:
            return instant < reference
        if op == DateOperator.AFTER:
            return instant > reference
        if op == DateOperator.ON_DATE:
            return instant.date() == reference.date()
        if op == DateOperator.BETWEEN:
            end = parse_instant(condition.value2)
            if end is None:
                return False
            return reference <= instant <= end
        return False

    def _evaluate_event(self, condition: EventCondition) -> bool:
        matching = [e for e in self.events if e.name == condition.event_name]
        matching = self._apply_timeframe(matching, condition.timeframe)
        if condition.properties:
            matching = [
                e for e in matching
                if all(self._event_property_matches(e, f) for f in condition.properties)
            ]
        return event_count_matches(condition.operator, len(matching), condition.count)

    def _apply_timeframe(self, events: list[EventRecord], timeframe: Optional[EventTimeframe]) -> list[EventRecord]:
        if timeframe is None or timeframe.type == TimeframeType.EVER:
            return events
        if timeframe.type == TimeframeType.IN_LAST_DAYS:
            cutoff = self._days_ago(timeframe.days)
            return [e for e in events if e.timestamp >= cutoff]
        start, end = parse_instant(timeframe.start_date), parse_instant(timeframe.end_date)
        if start is None or end is None:
            return []
        return [e for e in events if start <= e.timestamp <= end]

    @staticmethod
    def _event_property_matches(event: EventRecord, condition: PropertyCondition) -> bool:
        path = condition.field
        if not path.startswith("properties."):
            path = f"properties.{path}"
        value = resolve_path({"properties": event.properties or {}}, path)
        return compare_values(value, condition.operator, condition.value)


def evaluate(
    profile: ProfileSnapshot,
    events: Iterable[EventRecord],
    memberships: Iterable[str],
    group: ConditionGroup,
    now: Optional[datetime] = None,
) -> bool:
    """Evaluate one rule tree for one profile."""
    return ConditionEvaluator(events, memberships, now=now).evaluate(profile, group)
