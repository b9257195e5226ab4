"""
Entitlement Service - owner-scoped entry point for entitlement checks.

Provides:
- check_feature(owner_id, feature)          -> FeatureAccessResult
- check_capacity(owner_id, resource_kind)   -> CapacityCheckResult
- get_status(owner_id)                      -> SubscriptionStatusSummary
- record_feature_usage(owner_id, feature)   -> bool (best effort)

Architecture:
- Loads the owner's current subscription and usage, then delegates the
  decision to the pure EntitlementResolver
- Fail-CLOSED: if the store cannot supply a subscription, access is denied
  with reason subscription_unavailable and a support alert is emitted
- Every denial is written to the entitlement audit log

CRITICAL: Route handlers should go through this service (or the
require_feature dependency), never query subscriptions directly.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from edpsych.entitlements.audit import AccessDenialEvent, EntitlementAuditLogger
from edpsych.entitlements.catalogue import coerce_feature
from edpsych.entitlements.errors import EntitlementError
from edpsych.entitlements.models import (
    CapacityCheckResult,
    CapacityUsage,
    DenialReason,
    Feature,
    FeatureAccessResult,
    ResourceKind,
    Subscription,
    Tier,
    UpgradeAction,
    serialize_limit,
)
from edpsych.entitlements.resolver import EntitlementResolver
from edpsych.models.feature_usage import FeatureUsage
from edpsych.repositories.capacity_repository import CapacityUsageRepository
from edpsych.repositories.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)


class EntitlementEvaluationError(EntitlementError):
    """
    Raised when entitlements cannot be evaluated at all (fail-closed).

    Carries a machine-readable error_code for the UI to display.
    """

    def __init__(self, owner_id: str, detail: str, cause: Optional[Exception] = None):
        self.owner_id = owner_id
        self.detail = detail
        self.cause = cause
        self.error_code = "ENTITLEMENT_EVAL_FAILED"
        super().__init__(f"Entitlement evaluation failed for {owner_id}: {detail}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.detail,
            "owner_id": self.owner_id,
        }


@dataclass
class SubscriptionStatusSummary:
    """Everything an account page needs about an owner's plan."""

    owner_id: str
    subscription: Optional[Subscription]
    tier_name: Optional[str] = None
    is_entitled: bool = False
    available_features: List[Feature] = field(default_factory=list)
    capacity: Dict[ResourceKind, CapacityCheckResult] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "subscription": self.subscription.to_dict() if self.subscription else None,
            "tier_name": self.tier_name,
            "is_entitled": self.is_entitled,
            "available_features": [f.value for f in self.available_features],
            "capacity": {k.value: v.to_dict() for k, v in self.capacity.items()},
        }


class EntitlementService:
    """
    Owner-scoped entitlement checks backed by the subscription store.

    One instance per request / job. Stateless between calls except for the
    injected collaborators.
    """

    def __init__(
        self,
        db_session: Session,
        resolver: EntitlementResolver,
        audit_logger: Optional[EntitlementAuditLogger] = None,
    ):
        self.db = db_session
        self._resolver = resolver
        self._audit = audit_logger or EntitlementAuditLogger()
        self._subscriptions = SubscriptionRepository(db_session)
        self._capacity = CapacityUsageRepository(db_session)

    @property
    def resolver(self) -> EntitlementResolver:
        return self._resolver

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def get_subscription(self, owner_id: str) -> Optional[Subscription]:
        """
        Load the owner's current subscription.

        Raises EntitlementEvaluationError if the store fails.
        """
        if not owner_id:
            raise EntitlementEvaluationError(owner_id or "", "owner_id is required")
        try:
            return self._subscriptions.get_current(owner_id)
        except Exception as exc:
            recover_session(self.db)
            emit_support_alert(owner_id, exc)
            raise EntitlementEvaluationError(
                owner_id, "Subscription store unavailable", cause=exc
            ) from exc

    def get_usage(self, owner_id: str) -> CapacityUsage:
        try:
            return self._capacity.get_or_empty(owner_id)
        except Exception as exc:
            recover_session(self.db)
            emit_support_alert(owner_id, exc)
            raise EntitlementEvaluationError(
                owner_id, "Capacity store unavailable", cause=exc
            ) from exc

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_feature(
        self,
        owner_id: str,
        feature: Union[Feature, str],
        user_id: Optional[str] = None,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
    ) -> FeatureAccessResult:
        """
        Check a feature for an owner. Never raises for store failures.

        Raises UnknownFeatureError for identifiers outside the catalogue.
        """
        feature = coerce_feature(feature)

        try:
            subscription = self.get_subscription(owner_id)
        except EntitlementEvaluationError:
            result = FeatureAccessResult(
                granted=False,
                feature=feature,
                feature_name=self._resolver.catalogue.feature_name(feature),
                reason=DenialReason.SUBSCRIPTION_UNAVAILABLE,
                action=UpgradeAction.CONTACT_SALES,
            )
            self._log_feature_denial(owner_id, None, result, user_id, endpoint, method)
            return result

        result = self._resolver.has_feature_access(subscription, feature)

        if result.reason == DenialReason.UNRECOGNIZED_TIER:
            logger.error(
                "Subscription references a tier missing from the catalogue",
                extra={
                    "owner_id": owner_id,
                    "subscription_id": subscription.id,
                    "tier": str(getattr(subscription.tier, "value", subscription.tier)),
                },
            )

        if not result.granted:
            self._log_feature_denial(owner_id, subscription, result, user_id, endpoint, method)
        return result

    def check_capacity(
        self,
        owner_id: str,
        resource_kind: Union[ResourceKind, str],
        user_id: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> CapacityCheckResult:
        """Check current usage of one resource against the owner's effective limit."""
        resource_kind = ResourceKind(resource_kind)

        try:
            subscription = self.get_subscription(owner_id)
            usage = self.get_usage(owner_id)
        except EntitlementEvaluationError:
            result = CapacityCheckResult(
                within_limit=False,
                resource_kind=resource_kind,
                current=0,
                limit=0,
                reason=DenialReason.SUBSCRIPTION_UNAVAILABLE,
            )
            self._log_capacity_denial(owner_id, None, result, user_id, endpoint)
            return result

        result = self._resolver.check_subscription_capacity(usage, subscription, resource_kind)
        if not result.within_limit:
            self._log_capacity_denial(owner_id, subscription, result, user_id, endpoint)
        return result

    def get_status(self, owner_id: str) -> SubscriptionStatusSummary:
        """
        Summarise the owner's subscription, features and capacity.

        Raises EntitlementEvaluationError if the store fails.
        """
        subscription = self.get_subscription(owner_id)
        usage = self.get_usage(owner_id)

        summary = SubscriptionStatusSummary(owner_id=owner_id, subscription=subscription)
        if subscription is None:
            return summary

        try:
            tier = Tier(subscription.tier)
        except ValueError:
            return summary

        definition = self._resolver.catalogue.get_tier(tier)
        summary.tier_name = definition.name
        summary.is_entitled = subscription.status.grants_access
        if summary.is_entitled:
            summary.available_features = definition.enabled_features()
        summary.capacity = {
            kind: self._resolver.check_subscription_capacity(usage, subscription, kind)
            for kind in ResourceKind
        }
        return summary

    # ------------------------------------------------------------------
    # Usage logging
    # ------------------------------------------------------------------

    def record_feature_usage(
        self,
        owner_id: str,
        feature: Union[Feature, str],
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Append a feature usage row.

        Analytics is best effort: a store failure is logged and reported as
        False, never raised into the request.
        """
        feature = coerce_feature(feature)
        try:
            self.db.add(FeatureUsage(
                owner_id=owner_id,
                feature=feature.value,
                user_id=user_id,
                extra_metadata=metadata or {},
            ))
            self.db.commit()
            return True
        except SQLAlchemyError as exc:
            recover_session(self.db)
            logger.warning(
                "Failed to record feature usage",
                extra={"owner_id": owner_id, "feature": feature.value, "error": str(exc)},
            )
            return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _log_feature_denial(
        self,
        owner_id: str,
        subscription: Optional[Subscription],
        result: FeatureAccessResult,
        user_id: Optional[str],
        endpoint: Optional[str],
        method: Optional[str],
    ) -> None:
        self._audit.log_denial(AccessDenialEvent(
            owner_id=owner_id,
            feature_name=result.feature.value,
            reason=result.reason.value if result.reason else "denied",
            tier=_value(subscription.tier) if subscription else None,
            status=_value(subscription.status) if subscription else None,
            required_tier=_value(result.required_tier),
            user_id=user_id,
            endpoint=endpoint,
            method=method,
        ))

    def _log_capacity_denial(
        self,
        owner_id: str,
        subscription: Optional[Subscription],
        result: CapacityCheckResult,
        user_id: Optional[str],
        endpoint: Optional[str],
    ) -> None:
        self._audit.log_denial(AccessDenialEvent(
            owner_id=owner_id,
            feature_name=f"capacity:{result.resource_kind.value}",
            reason=result.reason.value if result.reason else "denied",
            tier=_value(subscription.tier) if subscription else None,
            status=_value(subscription.status) if subscription else None,
            required_tier=_value(result.required_tier),
            user_id=user_id,
            endpoint=endpoint,
            current=result.current,
            limit=serialize_limit(result.limit),
        ))


def recover_session(db: Session) -> None:
    """Roll back after a store failure so the session stays usable."""
    try:
        db.rollback()
    except SQLAlchemyError as exc:
        logger.warning("Session rollback failed", extra={"error": str(exc)})


def emit_support_alert(owner_id: str, exc: Exception) -> None:
    """
    Emit a support alert for an entitlement evaluation failure.

    Logs at CRITICAL level with a structured payload so monitoring can
    page on alert_type.
    """
    logger.critical(
        "ENTITLEMENT_EVAL_FAILED - support alert",
        extra={
            "alert_type": "entitlement_eval_failed",
            "owner_id": owner_id,
            "error_type": type(exc).__name__,
            "error_detail": str(exc),
            "action_required": "Investigate subscription store failure",
        },
    )


def _value(item: Any) -> Optional[str]:
    if item is None:
        return None
    return str(getattr(item, "value", item))
