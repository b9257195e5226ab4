"""
SQLAlchemy models. Importing this package registers every table on Base.metadata.
"""

from edpsych.models.base import Base, TimestampMixin, OwnerScopedMixin, generate_uuid
from edpsych.models.subscription import OrganisationSubscription
from edpsych.models.capacity_usage import CapacityUsageCounter
from edpsych.models.billing_event import BillingEvent, BillingEventType, ActorType
from edpsych.models.feature_usage import FeatureUsage

__all__ = [
    "Base",
    "TimestampMixin",
    "OwnerScopedMixin",
    "generate_uuid",
    "OrganisationSubscription",
    "CapacityUsageCounter",
    "BillingEvent",
    "BillingEventType",
    "ActorType",
    "FeatureUsage",
]
