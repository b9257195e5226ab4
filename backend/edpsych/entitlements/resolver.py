"""
Entitlement Resolver - decide feature access and capacity limits.

Provides:
- EntitlementResolver.has_feature_access(subscription, feature)
- EntitlementResolver.check_capacity(usage, tier, resource_kind)
- EntitlementResolver.compare_tiers(a, b)
- Upgrade guidance helpers (minimum tier for a feature, features lost or
  gained on a plan change, plan change classification)

The resolver is pure: it reads only its arguments and the catalogue, keeps
no mutable state and never writes. Safe to share between threads.

It does NOT increment capacity counters. Provisioning code must use
CapacityService.try_increment (an atomic check-and-increment in the store)
when adding users, students or schools.
"""

from typing import List, Optional, Union

from edpsych.entitlements.catalogue import (
    Catalogue,
    TierDefinition,
    coerce_feature,
    coerce_tier,
)
from edpsych.entitlements.models import (
    UNLIMITED,
    CapacityCheckResult,
    CapacityUsage,
    DenialReason,
    Feature,
    FeatureAccessResult,
    Limit,
    PlanChange,
    ResourceKind,
    Subscription,
    SubscriptionStatus,
    Tier,
    UpgradeAction,
)


def _tier_or_none(value) -> Optional[Tier]:
    try:
        return Tier(value)
    except ValueError:
        return None


def _status_or_none(value) -> Optional[SubscriptionStatus]:
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return None


class EntitlementResolver:
    """
    Stateless decision functions over a validated catalogue.

    Usage:
        resolver = EntitlementResolver(catalogue)
        result = resolver.has_feature_access(subscription, Feature.BATTLE_ROYALE)
        if not result.granted:
            show_upgrade_prompt(result.to_dict())
    """

    def __init__(self, catalogue: Catalogue):
        self._catalogue = catalogue

    @property
    def catalogue(self) -> Catalogue:
        return self._catalogue

    # ------------------------------------------------------------------
    # Feature access
    # ------------------------------------------------------------------

    def has_feature_access(
        self,
        subscription: Optional[Subscription],
        feature: Union[Feature, str],
    ) -> FeatureAccessResult:
        """
        Decide whether a subscription unlocks a feature.

        Never raises for a missing or malformed subscription; denial is
        returned as a result. Raises UnknownFeatureError only when the
        feature identifier itself is not in the catalogue.
        """
        feature = coerce_feature(feature)
        feature_name = self._catalogue.feature_name(feature)

        if subscription is None:
            return self._deny(feature, feature_name, DenialReason.NO_ACTIVE_SUBSCRIPTION)

        tier = _tier_or_none(subscription.tier)
        status = _status_or_none(subscription.status)
        current = self._catalogue.get_tier(tier) if tier is not None else None

        if status is None or not status.grants_access:
            return self._deny(
                feature,
                feature_name,
                DenialReason.NO_ACTIVE_SUBSCRIPTION,
                current=current,
                action=UpgradeAction.RENEW,
            )

        if current is None:
            return FeatureAccessResult(
                granted=False,
                feature=feature,
                feature_name=feature_name,
                reason=DenialReason.UNRECOGNIZED_TIER,
                current_tier=subscription.tier,
                action=UpgradeAction.CONTACT_SALES,
            )

        if current.includes(feature):
            return FeatureAccessResult(
                granted=True,
                feature=feature,
                feature_name=feature_name,
                current_tier=current.tier,
                current_tier_name=current.name,
            )

        return self._deny(feature, feature_name, DenialReason.NOT_IN_TIER, current=current)

    def _deny(
        self,
        feature: Feature,
        feature_name: str,
        reason: DenialReason,
        current: Optional[TierDefinition] = None,
        action: Optional[UpgradeAction] = None,
    ) -> FeatureAccessResult:
        target = self._upgrade_target_for_feature(feature, current)
        if action is None:
            if target is None:
                action = UpgradeAction.CONTACT_SALES
            elif current is None:
                action = UpgradeAction.SUBSCRIBE
            else:
                action = UpgradeAction.UPGRADE

        return FeatureAccessResult(
            granted=False,
            feature=feature,
            feature_name=feature_name,
            reason=reason,
            current_tier=current.tier if current else None,
            current_tier_name=current.name if current else None,
            required_tier=target.tier if target else None,
            required_tier_name=target.name if target else None,
            action=action,
        )

    def _upgrade_target_for_feature(
        self,
        feature: Feature,
        current: Optional[TierDefinition],
    ) -> Optional[TierDefinition]:
        """
        Cheapest purchasable tier above the current one that includes the feature.

        Never a tier ranked at or below the current one: when nothing higher
        includes the feature there is no upgrade path and the caller gets None.
        """
        candidates = [
            t for t in self._catalogue.tiers
            if t.purchasable and t.includes(feature)
        ]
        if current is None:
            return candidates[0] if candidates else None

        higher = [t for t in candidates if t.rank > current.rank]
        if not higher:
            return None

        same_audience = [t for t in higher if t.audience == current.audience]
        return (same_audience or higher)[0]

    # ------------------------------------------------------------------
    # Capacity
    # ------------------------------------------------------------------

    def check_capacity(
        self,
        usage: Optional[CapacityUsage],
        tier: Union[Tier, str],
        resource_kind: Union[ResourceKind, str],
        limit: Optional[Limit] = None,
    ) -> CapacityCheckResult:
        """
        Check usage against the tier's cap for a resource.

        Caps are inclusive: usage equal to the limit is within limit.
        An explicit ``limit`` (per-subscription override) replaces the tier
        default.
        """
        definition = self._catalogue.get_tier(coerce_tier(tier))
        resource_kind = ResourceKind(resource_kind)

        current = usage.get(resource_kind) if usage is not None else 0
        if limit is None:
            limit = definition.limit_for(resource_kind)

        if limit is UNLIMITED or current <= limit:
            return CapacityCheckResult(
                within_limit=True,
                resource_kind=resource_kind,
                current=current,
                limit=limit,
            )

        target = self._upgrade_target_for_capacity(definition, resource_kind, current)
        return CapacityCheckResult(
            within_limit=False,
            resource_kind=resource_kind,
            current=current,
            limit=limit,
            reason=DenialReason.LIMIT_EXCEEDED,
            required_tier=target.tier if target else None,
        )

    def check_subscription_capacity(
        self,
        usage: Optional[CapacityUsage],
        subscription: Optional[Subscription],
        resource_kind: Union[ResourceKind, str],
    ) -> CapacityCheckResult:
        """
        Capacity check for an owner's subscription, applying contract overrides.

        Subscriptions that do not grant access have no capacity.
        """
        resource_kind = ResourceKind(resource_kind)
        current = usage.get(resource_kind) if usage is not None else 0

        status = _status_or_none(subscription.status) if subscription else None
        if status is None or not status.grants_access:
            return CapacityCheckResult(
                within_limit=False,
                resource_kind=resource_kind,
                current=current,
                limit=0,
                reason=DenialReason.NO_ACTIVE_SUBSCRIPTION,
            )

        tier = _tier_or_none(subscription.tier)
        if tier is None:
            return CapacityCheckResult(
                within_limit=False,
                resource_kind=resource_kind,
                current=current,
                limit=0,
                reason=DenialReason.UNRECOGNIZED_TIER,
            )

        return self.check_capacity(
            usage, tier, resource_kind, limit=self.effective_limit(subscription, resource_kind)
        )

    def effective_limit(
        self,
        subscription: Subscription,
        resource_kind: Union[ResourceKind, str],
    ) -> Limit:
        """Per-subscription override if set, otherwise the tier default."""
        resource_kind = ResourceKind(resource_kind)
        override = subscription.limit_override(resource_kind)
        if override is not None:
            return override
        return self._catalogue.get_tier(subscription.tier).limit_for(resource_kind)

    def _upgrade_target_for_capacity(
        self,
        current: TierDefinition,
        resource_kind: ResourceKind,
        needed: int,
    ) -> Optional[TierDefinition]:
        """Cheapest purchasable tier above the current one whose cap fits ``needed``."""
        candidates = []
        for t in self._catalogue.tiers:
            if not t.purchasable or t.rank <= current.rank:
                continue
            limit = t.limit_for(resource_kind)
            if limit is UNLIMITED or limit >= needed:
                candidates.append(t)
        same_audience = [t for t in candidates if t.audience == current.audience]
        pool = same_audience or candidates
        return pool[0] if pool else None

    # ------------------------------------------------------------------
    # Tier ordering and plan changes
    # ------------------------------------------------------------------

    def compare_tiers(self, a: Union[Tier, str], b: Union[Tier, str]) -> int:
        """
        Order two tiers by rank: -1 if a < b, 0 if equal rank, 1 if a > b.

        Tiers that differ only in audience share a rank and compare equal.
        """
        rank_a = self._catalogue.get_tier(a).rank
        rank_b = self._catalogue.get_tier(b).rank
        return (rank_a > rank_b) - (rank_a < rank_b)

    def classify_plan_change(self, from_tier: Union[Tier, str], to_tier: Union[Tier, str]) -> PlanChange:
        comparison = self.compare_tiers(to_tier, from_tier)
        if comparison > 0:
            return PlanChange.UPGRADE
        if comparison < 0:
            return PlanChange.DOWNGRADE
        return PlanChange.LATERAL

    def minimum_tier_for_feature(self, feature: Union[Feature, str]) -> Optional[Tier]:
        """Lowest-rank purchasable tier that includes the feature, if any."""
        target = self._upgrade_target_for_feature(coerce_feature(feature), None)
        return target.tier if target else None

    def available_features(self, tier: Union[Tier, str]) -> List[Feature]:
        return self._catalogue.get_tier(tier).enabled_features()

    def features_lost(self, from_tier: Union[Tier, str], to_tier: Union[Tier, str]) -> List[Feature]:
        """Features included in from_tier that to_tier does not include."""
        source = self._catalogue.get_tier(from_tier)
        target = self._catalogue.get_tier(to_tier)
        return [f for f in Feature if source.includes(f) and not target.includes(f)]

    def features_gained(self, from_tier: Union[Tier, str], to_tier: Union[Tier, str]) -> List[Feature]:
        return self.features_lost(to_tier, from_tier)
