"""
Request/response models for the subscription and billing webhook APIs.

Limits are serialised as an integer or the string "unlimited".
"""

from datetime import date
from decimal import Decimal
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from edpsych.entitlements.models import BillingCycle

LimitValue = Union[int, Literal["unlimited"]]


class SubscriptionResponse(BaseModel):
    id: str
    tier: str
    status: str
    billing_cycle: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    quantity: Optional[int] = None
    amount: Optional[str] = None
    auto_renew: bool = True


class CapacityResponse(BaseModel):
    """Usage of one resource against its effective cap."""
    resource_kind: str
    within_limit: bool
    current: int
    limit: LimitValue
    remaining: Optional[int] = None
    display: str
    reason: Optional[str] = None
    required_tier: Optional[str] = None
    requested: Optional[int] = None


class SubscriptionStatusResponse(BaseModel):
    owner_id: str
    subscription: Optional[SubscriptionResponse] = None
    tier_name: Optional[str] = None
    is_entitled: bool
    available_features: List[str] = Field(default_factory=list)
    capacity: Dict[str, CapacityResponse] = Field(default_factory=dict)


class FeatureAccessResponse(BaseModel):
    """Upgrade-prompt friendly result of a feature check."""
    granted: bool
    feature: str
    feature_name: str
    reason: Optional[str] = None
    current_tier: Optional[str] = None
    current_tier_name: Optional[str] = None
    required_tier: Optional[str] = None
    required_tier_name: Optional[str] = None
    action: Optional[str] = None


class PlanResponse(BaseModel):
    id: str
    name: str
    audience: str
    rank: int
    purchasable: bool
    limits: Dict[str, LimitValue]
    features: List[str]


class PlansListResponse(BaseModel):
    version: Optional[str] = None
    plans: List[PlanResponse]


class PlanComparisonResponse(BaseModel):
    from_tier: str
    to_tier: str
    change: str
    comparison: int
    features_gained: List[str]
    features_lost: List[str]
    limits: Dict[str, Dict[str, LimitValue]]


class FeatureUsageRequest(BaseModel):
    metadata: Dict[str, Union[str, int, float, bool, None]] = Field(default_factory=dict)


class FeatureUsageResponse(BaseModel):
    feature: str
    recorded: bool


class BillingWebhookEvent(BaseModel):
    """
    Signed lifecycle event from the billing provider.

    Only the fields relevant to event_type are read.
    """
    event_type: Literal[
        "trial.started",
        "trial.expired",
        "subscription.activated",
        "subscription.renewed",
        "subscription.plan_changed",
        "subscription.cancelled",
        "subscription.reactivated",
        "payment.failed",
        "payment.recovered",
        "subscription.unpaid",
    ]
    owner_id: str = Field(..., min_length=1, max_length=255)
    tier: Optional[str] = None
    billing_cycle: Optional[BillingCycle] = None
    quantity: Optional[int] = Field(None, ge=0)
    amount: Optional[Decimal] = Field(None, ge=0)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    trial_days: Optional[int] = Field(None, ge=1)
    reason: Optional[str] = None


class WebhookResponse(BaseModel):
    """Response returned to the billing provider."""
    success: bool = True
    message: str = "Webhook processed"
    subscription_id: Optional[str] = None
    status: Optional[str] = None
