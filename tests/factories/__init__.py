"""
Test factories for generating realistic test data.

Uses factory_boy for declarative test data generation.
"""

from .profile import (
    ORGANIZATION_ID,
    ProfileFactory,
    FreePlanProfileFactory,
    ProPlanProfileFactory,
    EventFactory,
)
from .segment import (
    PropertyConditionFactory,
    EventConditionFactory,
    SegmentFactory,
    FlowFactory,
)

__all__ = [
    "ORGANIZATION_ID",
    "ProfileFactory",
    "FreePlanProfileFactory",
    "ProPlanProfileFactory",
    "EventFactory",
    "PropertyConditionFactory",
    "EventConditionFactory",
    "SegmentFactory",
    "FlowFactory",
]
