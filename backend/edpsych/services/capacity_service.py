"""
Capacity provisioning service.

The resolver only reads capacity. Code that adds users, students or
schools must call try_increment here, which checks and increments in a
single conditional UPDATE so concurrent requests cannot exceed a cap.
"""

import logging
from dataclasses import replace
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from edpsych.entitlements.audit import AccessDenialEvent, EntitlementAuditLogger
from edpsych.entitlements.models import (
    CapacityCheckResult,
    DenialReason,
    ResourceKind,
    serialize_limit,
)
from edpsych.entitlements.resolver import EntitlementResolver
from edpsych.repositories.capacity_repository import CapacityUsageRepository
from edpsych.repositories.subscription_repository import SubscriptionRepository
from edpsych.services.entitlement_service import (
    EntitlementEvaluationError,
    emit_support_alert,
    recover_session,
)

logger = logging.getLogger(__name__)


class CapacityService:
    """Owner-scoped, race-free capacity counters."""

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

    def try_increment(
        self,
        owner_id: str,
        resource_kind: Union[ResourceKind, str],
        amount: int = 1,
    ) -> CapacityCheckResult:
        """
        Reserve ``amount`` of a resource if the owner's effective limit allows it.

        Returns the post-operation usage. within_limit is False (and the
        counter unchanged) when the increment would exceed the cap or the
        owner has no subscription granting access. A store failure fails
        closed with reason subscription_unavailable.
        """
        resource_kind = ResourceKind(resource_kind)
        try:
            return self._try_increment(owner_id, resource_kind, amount)
        except SQLAlchemyError as exc:
            recover_session(self.db)
            emit_support_alert(owner_id, exc)
            result = CapacityCheckResult(
                within_limit=False,
                resource_kind=resource_kind,
                current=0,
                limit=0,
                reason=DenialReason.SUBSCRIPTION_UNAVAILABLE,
                requested=amount,
            )
            self._log_denial(owner_id, result, amount)
            return result

    def _try_increment(self, owner_id: str, resource_kind: ResourceKind, amount: int) -> CapacityCheckResult:
        subscription = self._subscriptions.get_current(owner_id)
        usage = self._capacity.get_or_empty(owner_id)

        # Reuse the resolver for status and tier checks on the current usage
        gate = self._resolver.check_subscription_capacity(usage, subscription, resource_kind)
        if gate.reason in (DenialReason.NO_ACTIVE_SUBSCRIPTION, DenialReason.UNRECOGNIZED_TIER):
            gate = replace(gate, requested=amount)
            self._log_denial(owner_id, gate, amount)
            return gate

        limit = self._resolver.effective_limit(subscription, resource_kind)
        applied = self._capacity.increment_if_within(owner_id, resource_kind, amount, limit)
        current = self._capacity.get_or_empty(owner_id).get(resource_kind)

        if applied:
            logger.info("Capacity reserved", extra={
                "owner_id": owner_id,
                "resource_kind": resource_kind.value,
                "amount": amount,
                "current": current,
                "limit": serialize_limit(limit),
            })
            return CapacityCheckResult(
                within_limit=True,
                resource_kind=resource_kind,
                current=current,
                limit=limit,
            )

        # Ask the resolver which tier would fit the requested total
        requested = self._resolver.check_capacity(
            replace(usage, **{resource_kind.counter_key: current + amount}),
            subscription.tier,
            resource_kind,
            limit=limit,
        )
        result = CapacityCheckResult(
            within_limit=False,
            resource_kind=resource_kind,
            current=current,
            limit=limit,
            reason=DenialReason.LIMIT_EXCEEDED,
            required_tier=requested.required_tier,
            requested=amount,
        )
        self._log_denial(owner_id, result, amount)
        return result

    def release(
        self,
        owner_id: str,
        resource_kind: Union[ResourceKind, str],
        amount: int = 1,
    ) -> int:
        """Give back ``amount`` of a resource. Returns the new count (never below zero)."""
        resource_kind = ResourceKind(resource_kind)
        try:
            self._capacity.release(owner_id, resource_kind, amount)
            current = self._capacity.get_or_empty(owner_id).get(resource_kind)
        except SQLAlchemyError as exc:
            recover_session(self.db)
            emit_support_alert(owner_id, exc)
            raise EntitlementEvaluationError(owner_id, "Capacity store unavailable", cause=exc) from exc
        logger.info("Capacity released", extra={
            "owner_id": owner_id,
            "resource_kind": resource_kind.value,
            "amount": amount,
            "current": current,
        })
        return current

    def _log_denial(self, owner_id: str, result: CapacityCheckResult, amount: int) -> None:
        self._audit.log_denial(AccessDenialEvent(
            owner_id=owner_id,
            feature_name=f"capacity:{result.resource_kind.value}",
            reason=result.reason.value if result.reason else "denied",
            required_tier=result.required_tier.value if result.required_tier else None,
            current=result.current,
            limit=serialize_limit(result.limit),
            extra_metadata={"requested": amount},
        ))
