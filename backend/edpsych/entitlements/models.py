"""
Entitlement models - canonical types for tier/feature entitlements.

Provides:
- Tier, Feature, SubscriptionStatus, BillingCycle, ResourceKind: closed enums
- UNLIMITED: explicit sentinel for uncapped capacity limits
- Subscription, CapacityUsage: plain domain records (persistence lives in
  edpsych.models and edpsych.repositories)
- FeatureAccessResult, CapacityCheckResult: resolver decisions, shaped for
  direct use by an upgrade prompt

CRITICAL: Import enums from here. Do NOT redefine tier or feature
identifiers elsewhere.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union


# ---------------------------------------------------------------------------
# Canonical enums - single source of truth, import from here
# ---------------------------------------------------------------------------

class Tier(str, Enum):
    """Plan levels. Attributes (rank, limits, features) live in the catalogue."""
    TRIAL = "trial"
    DEMO = "demo"
    LEGACY = "legacy"
    SCHOOL_SMALL = "school_small"
    SCHOOL_MEDIUM = "school_medium"
    SCHOOL_LARGE = "school_large"
    MAT_SMALL = "mat_small"
    MAT_MEDIUM = "mat_medium"
    MAT_LARGE = "mat_large"
    LA_TIER1 = "la_tier1"
    LA_TIER2 = "la_tier2"
    LA_TIER3 = "la_tier3"
    RESEARCH_INDIVIDUAL = "research_individual"
    RESEARCH_INSTITUTIONAL = "research_institutional"
    RESEARCH_PARTNERSHIP = "research_partnership"


class Feature(str, Enum):
    """Capability flags gated by tier."""
    PROBLEM_SOLVER = "problem_solver"
    LESSON_DIFFERENTIATION = "lesson_differentiation"
    EHCNA_SUPPORT = "ehcna_support"
    BATTLE_ROYALE = "battle_royale"
    PROGRESS_MONITORING = "progress_monitoring"
    INTERVENTION_TRACKING = "intervention_tracking"
    BASIC_ANALYTICS = "basic_analytics"
    ADVANCED_ANALYTICS = "advanced_analytics"
    CUSTOM_REPORTS = "custom_reports"
    DATA_EXPORT = "data_export"
    TEAM_COLLABORATION = "team_collaboration"
    PARENT_PORTAL = "parent_portal"
    MULTI_SCHOOL_SHARING = "multi_school_sharing"
    EMAIL_SUPPORT = "email_support"
    PHONE_SUPPORT = "phone_support"
    PRIORITY_SUPPORT = "priority_support"
    TRAINING_SESSIONS = "training_sessions"
    DEDICATED_ACCOUNT_MANAGER = "dedicated_account_manager"
    RESEARCH_API = "research_api"
    RESEARCH_DATA_ACCESS = "research_data_access"
    RESEARCH_DOCUMENTATION = "research_documentation"
    CUSTOM_FEATURE_DEVELOPMENT = "custom_feature_development"
    API_ACCESS = "api_access"
    SIMS_INTEGRATION = "sims_integration"
    SINGLE_SIGN_ON = "single_sign_on"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states. Transitions live in entitlements.lifecycle."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    UNPAID = "unpaid"
    TRIALING = "trialing"
    TRIAL_EXPIRED = "trial_expired"

    @property
    def grants_access(self) -> bool:
        """Only active and trialing subscriptions unlock features."""
        return self in ENTITLED_STATUSES

    @property
    def is_current(self) -> bool:
        """Current subscriptions occupy the owner's single subscription slot."""
        return self in CURRENT_STATUSES


ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

CURRENT_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.UNPAID,
})


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    TERMLY = "termly"
    ANNUALLY = "annually"


class Audience(str, Enum):
    """Who a tier is sold to. Tiers with equal rank may differ only here."""
    SCHOOL = "school"
    MAT = "mat"
    LOCAL_AUTHORITY = "local_authority"
    RESEARCH = "research"
    EVALUATION = "evaluation"
    LEGACY = "legacy"


class ResourceKind(str, Enum):
    """Capacity-limited resources."""
    USERS = "users"
    STUDENTS = "students"
    SCHOOLS = "schools"

    @property
    def limit_key(self) -> str:
        """Catalogue / subscription field holding the cap for this resource."""
        return f"max_{self.value}"

    @property
    def counter_key(self) -> str:
        """CapacityUsage field holding the current count for this resource."""
        return f"current_{self.value}"


class DenialReason(str, Enum):
    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
    NOT_IN_TIER = "not_in_tier"
    SUBSCRIPTION_UNAVAILABLE = "subscription_unavailable"
    UNRECOGNIZED_TIER = "unrecognized_tier"
    LIMIT_EXCEEDED = "limit_exceeded"


class UpgradeAction(str, Enum):
    """What the user must do to gain access."""
    SUBSCRIBE = "subscribe"
    RENEW = "renew"
    UPGRADE = "upgrade"
    CONTACT_SALES = "contact_sales"


class PlanChange(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    LATERAL = "lateral"


# ---------------------------------------------------------------------------
# Capacity limit sentinel
# ---------------------------------------------------------------------------

class Unlimited(Enum):
    """Sentinel type for uncapped limits. Never compare limits to magic numbers."""
    UNLIMITED = "unlimited"

    def __str__(self) -> str:
        return self.value


UNLIMITED = Unlimited.UNLIMITED

Limit = Union[int, Unlimited]


def is_unlimited(limit: Optional[Limit]) -> bool:
    return limit is UNLIMITED


def serialize_limit(limit: Limit) -> Union[int, str]:
    """JSON-safe representation: integers stay integers, UNLIMITED becomes "unlimited"."""
    return limit.value if limit is UNLIMITED else limit


def parse_limit(value: Any) -> Limit:
    """
    Parse a stored or configured limit.

    Accepts non-negative integers and the string "unlimited". Raises
    ValueError for anything else (booleans, negatives, other strings).
    """
    if value is UNLIMITED:
        return UNLIMITED
    if isinstance(value, str) and value.strip().lower() == UNLIMITED.value:
        return UNLIMITED
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"limit must be a non-negative integer or 'unlimited', got {value!r}")
    if value < 0:
        raise ValueError(f"limit must be non-negative, got {value}")
    return value


# ---------------------------------------------------------------------------
# Domain records (frozen dataclasses)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Subscription:
    """
    An owner's subscription to a tier.

    Mutations go through SubscriptionService, which returns new records.
    The max_* fields are negotiated per-contract caps that replace the tier
    default for that resource when set. ``tier`` holds the stored string
    unchanged when it is not a known Tier, so the resolver can deny it.
    """

    id: str
    owner_id: str
    tier: Tier
    status: SubscriptionStatus
    billing_cycle: BillingCycle = BillingCycle.ANNUALLY
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    quantity: Optional[int] = None
    amount: Optional[Decimal] = None
    auto_renew: bool = True
    max_users: Optional[Limit] = None
    max_students: Optional[Limit] = None
    max_schools: Optional[Limit] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def limit_override(self, resource_kind: ResourceKind) -> Optional[Limit]:
        return getattr(self, resource_kind.limit_key)

    def to_dict(self) -> Dict[str, Any]:
        def _value(v):
            return getattr(v, "value", v)

        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "tier": _value(self.tier),
            "status": _value(self.status),
            "billing_cycle": _value(self.billing_cycle),
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "quantity": self.quantity,
            "amount": str(self.amount) if self.amount is not None else None,
            "auto_renew": self.auto_renew,
        }


@dataclass(frozen=True)
class CapacityUsage:
    """Per-owner resource counters maintained by the provisioning collaborator."""

    owner_id: str
    current_users: int = 0
    current_students: int = 0
    current_schools: int = 0

    def get(self, resource_kind: ResourceKind) -> int:
        return getattr(self, resource_kind.counter_key)


# ---------------------------------------------------------------------------
# Resolver results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeatureAccessResult:
    """Outcome of a feature check. Denial is a value, not an exception."""

    granted: bool
    feature: Feature
    feature_name: str
    reason: Optional[DenialReason] = None
    current_tier: Optional[Tier] = None
    current_tier_name: Optional[str] = None
    required_tier: Optional[Tier] = None
    required_tier_name: Optional[str] = None
    action: Optional[UpgradeAction] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "granted": self.granted,
            "feature": self.feature.value,
            "feature_name": self.feature_name,
            "reason": self.reason.value if self.reason else None,
            "current_tier": getattr(self.current_tier, "value", self.current_tier),
            "current_tier_name": self.current_tier_name,
            "required_tier": self.required_tier.value if self.required_tier else None,
            "required_tier_name": self.required_tier_name,
            "action": self.action.value if self.action else None,
        }


@dataclass(frozen=True)
class CapacityCheckResult:
    """
    Outcome of a capacity check.

    Limits are inclusive caps: current == limit is within limit.
    """

    within_limit: bool
    resource_kind: ResourceKind
    current: int
    limit: Limit
    reason: Optional[DenialReason] = None
    required_tier: Optional[Tier] = None
    # amount asked for by a reservation that was refused
    requested: Optional[int] = None

    @property
    def display(self) -> str:
        """Human-readable usage, e.g. "42/100 users"."""
        return f"{self.current}/{serialize_limit(self.limit)} {self.resource_kind.value}"

    @property
    def remaining(self) -> Optional[int]:
        """Headroom before the cap; None when unlimited."""
        if self.limit is UNLIMITED:
            return None
        return max(self.limit - self.current, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "within_limit": self.within_limit,
            "resource_kind": self.resource_kind.value,
            "current": self.current,
            "limit": serialize_limit(self.limit),
            "remaining": self.remaining,
            "display": self.display,
            "reason": self.reason.value if self.reason else None,
            "required_tier": self.required_tier.value if self.required_tier else None,
            "requested": self.requested,
        }
