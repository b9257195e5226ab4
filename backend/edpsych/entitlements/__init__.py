"""
Tier, feature and capacity entitlements for EdPsych subscriptions.

This package provides:
- Catalogue: tier / feature catalogue and inclusion matrix, loaded from
  config/plans.yml once at startup
- EntitlementResolver: pure feature and capacity checks over a catalogue
- lifecycle: the subscription status state machine
- EntitlementAuditLogger: audit trail for every denial

Denial is a result value, never an exception. FastAPI dependencies live in
edpsych.entitlements.dependencies and are imported from there directly.
"""

from edpsych.entitlements.models import (
    UNLIMITED,
    BillingCycle,
    CapacityCheckResult,
    CapacityUsage,
    DenialReason,
    Feature,
    FeatureAccessResult,
    PlanChange,
    ResourceKind,
    Subscription,
    SubscriptionStatus,
    Tier,
    UpgradeAction,
)
from edpsych.entitlements.errors import (
    CatalogueConfigError,
    EntitlementDeniedError,
    EntitlementError,
    InvalidStatusTransitionError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
    UnknownFeatureError,
    UnknownTierError,
)
from edpsych.entitlements.catalogue import Catalogue, load_catalogue
from edpsych.entitlements.resolver import EntitlementResolver
from edpsych.entitlements.lifecycle import can_transition, ensure_transition
from edpsych.entitlements.audit import AccessDenialEvent, EntitlementAuditLogger

__all__ = [
    "UNLIMITED",
    "BillingCycle",
    "CapacityCheckResult",
    "CapacityUsage",
    "DenialReason",
    "Feature",
    "FeatureAccessResult",
    "PlanChange",
    "ResourceKind",
    "Subscription",
    "SubscriptionStatus",
    "Tier",
    "UpgradeAction",
    "CatalogueConfigError",
    "EntitlementDeniedError",
    "EntitlementError",
    "InvalidStatusTransitionError",
    "SubscriptionConflictError",
    "SubscriptionNotFoundError",
    "UnknownFeatureError",
    "UnknownTierError",
    "Catalogue",
    "load_catalogue",
    "EntitlementResolver",
    "can_transition",
    "ensure_transition",
    "AccessDenialEvent",
    "EntitlementAuditLogger",
]
