"""
API schemas package.

Contains Pydantic models for request/response validation.
"""

from edpsych.api.schemas.subscription import (
    BillingWebhookEvent,
    CapacityResponse,
    FeatureAccessResponse,
    FeatureUsageRequest,
    FeatureUsageResponse,
    PlanComparisonResponse,
    PlanResponse,
    PlansListResponse,
    SubscriptionResponse,
    SubscriptionStatusResponse,
    WebhookResponse,
)

__all__ = [
    "BillingWebhookEvent",
    "CapacityResponse",
    "FeatureAccessResponse",
    "FeatureUsageRequest",
    "FeatureUsageResponse",
    "PlanComparisonResponse",
    "PlanResponse",
    "PlansListResponse",
    "SubscriptionResponse",
    "SubscriptionStatusResponse",
    "WebhookResponse",
]
