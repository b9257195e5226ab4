"""
Business logic services.
"""

from edpsych.services.entitlement_service import EntitlementService, EntitlementEvaluationError
from edpsych.services.subscription_service import SubscriptionService
from edpsych.services.capacity_service import CapacityService

__all__ = [
    "EntitlementService",
    "EntitlementEvaluationError",
    "SubscriptionService",
    "CapacityService",
]
