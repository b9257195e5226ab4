"""
Subscription lifecycle service.

Applies billing-provider events to an owner's subscription:
- start_trial / expire_trial
- activate (new subscription or trial conversion)
- record_payment_failure / recover_payment / mark_unpaid
- renew / cancel
- change_plan (supersede: close the old record, open a new one)
- reactivate (new record after a cancellation)

Every mutation validates the lifecycle rules in entitlements.lifecycle and
appends a BillingEvent in the same transaction as the subscription change.
"""

import logging
from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from edpsych.entitlements.catalogue import coerce_tier
from edpsych.entitlements.errors import (
    InvalidStatusTransitionError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
)
from edpsych.entitlements.lifecycle import ensure_transition
from edpsych.entitlements.models import (
    BillingCycle,
    PlanChange,
    Subscription,
    SubscriptionStatus,
    Tier,
)
from edpsych.entitlements.resolver import EntitlementResolver
from edpsych.models.base import generate_uuid
from edpsych.models.billing_event import ActorType, BillingEvent, BillingEventType
from edpsych.repositories.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

DEFAULT_TRIAL_DAYS = 14

_PLAN_CHANGE_EVENTS = {
    PlanChange.UPGRADE: BillingEventType.SUBSCRIPTION_UPGRADED,
    PlanChange.DOWNGRADE: BillingEventType.SUBSCRIPTION_DOWNGRADED,
    PlanChange.LATERAL: BillingEventType.PLAN_CHANGED,
}


def _to_pence(amount: Optional[Decimal]) -> Optional[int]:
    if amount is None:
        return None
    return int((Decimal(amount) * 100).to_integral_value())


class SubscriptionService:
    """
    Lifecycle operations for one owner's subscriptions.

    All methods require owner_id from the verified identity or a signed
    billing webhook.
    """

    def __init__(
        self,
        db_session: Session,
        owner_id: str,
        resolver: EntitlementResolver,
        actor_type: str = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ):
        if not owner_id:
            raise ValueError("owner_id is required")

        self.db = db_session
        self.owner_id = owner_id
        self._resolver = resolver
        self._actor_type = actor_type
        self._actor_id = actor_id
        self._subscriptions = SubscriptionRepository(db_session)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _log_billing_event(
        self,
        event_type: str,
        subscription_id: Optional[str] = None,
        from_tier: Optional[Tier] = None,
        to_tier: Optional[Tier] = None,
        amount: Optional[Decimal] = None,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> BillingEvent:
        """Log a billing event (append-only audit log). Committed with the change."""
        event = BillingEvent(
            id=generate_uuid(),
            owner_id=self.owner_id,
            event_type=event_type,
            subscription_id=subscription_id,
            from_tier=getattr(from_tier, "value", from_tier),
            to_tier=getattr(to_tier, "value", to_tier),
            amount_pence=_to_pence(amount),
            extra_metadata=metadata,
            actor_type=self._actor_type,
            actor_id=self._actor_id,
            description=description,
        )
        self.db.add(event)
        return event

    def _require_current(self) -> Subscription:
        subscription = self._subscriptions.get_current(self.owner_id)
        if subscription is None:
            raise SubscriptionNotFoundError(self.owner_id)
        return subscription

    def _ensure_no_current(self) -> None:
        existing = self._subscriptions.get_current(self.owner_id)
        if existing is not None:
            raise SubscriptionConflictError(self.owner_id, existing.id)

    def _open_current(self, write: Callable[[], Subscription]) -> Subscription:
        """
        Run a write that opens a current subscription.

        _ensure_no_current is only a read; the unique index on current rows
        is what stops two concurrent requests both opening one. The loser
        gets the same SubscriptionConflictError as a sequential caller.
        """
        try:
            return write()
        except IntegrityError:
            existing = self._subscriptions.get_current(self.owner_id)
            logger.warning("Concurrent subscription write rejected", extra={
                "owner_id": self.owner_id,
                "existing_id": existing.id if existing else None,
            })
            raise SubscriptionConflictError(self.owner_id, existing.id if existing else None)

    def _transition(
        self,
        subscription: Subscription,
        to_status: SubscriptionStatus,
        event_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        **changes,
    ) -> Subscription:
        ensure_transition(subscription.status, to_status)
        updated = replace(subscription, status=to_status, **changes)
        self._log_billing_event(
            event_type=event_type,
            subscription_id=subscription.id,
            metadata={
                "old_status": subscription.status.value,
                "new_status": to_status.value,
                **(metadata or {}),
            },
        )
        saved = self._subscriptions.save(updated)
        logger.info(
            "Subscription status changed",
            extra={
                "owner_id": self.owner_id,
                "subscription_id": subscription.id,
                "old_status": subscription.status.value,
                "new_status": to_status.value,
            },
        )
        return saved

    def _new_subscription(
        self,
        tier: Tier,
        status: SubscriptionStatus,
        billing_cycle: BillingCycle,
        start_date: date,
        end_date: Optional[date] = None,
        quantity: Optional[int] = None,
        amount: Optional[Decimal] = None,
        auto_renew: bool = True,
    ) -> Subscription:
        return Subscription(
            id=generate_uuid(),
            owner_id=self.owner_id,
            tier=tier,
            status=status,
            billing_cycle=BillingCycle(billing_cycle),
            start_date=start_date,
            end_date=end_date,
            quantity=quantity,
            amount=Decimal(amount) if amount is not None else None,
            auto_renew=auto_renew,
        )

    # ------------------------------------------------------------------
    # Trials
    # ------------------------------------------------------------------

    def start_trial(
        self,
        tier: Union[Tier, str] = Tier.TRIAL,
        trial_days: int = DEFAULT_TRIAL_DAYS,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        start_date: Optional[date] = None,
    ) -> Subscription:
        """Open a trialing subscription. The owner must not hold a current one."""
        tier = coerce_tier(tier)
        if trial_days < 1:
            raise ValueError("trial_days must be positive")
        self._ensure_no_current()

        start = start_date or date.today()
        subscription = self._new_subscription(
            tier=tier,
            status=SubscriptionStatus.TRIALING,
            billing_cycle=billing_cycle,
            start_date=start,
            end_date=start + timedelta(days=trial_days),
            auto_renew=False,
        )
        self._log_billing_event(
            event_type=BillingEventType.TRIAL_STARTED,
            subscription_id=subscription.id,
            to_tier=tier,
            metadata={"trial_days": trial_days},
        )
        saved = self._open_current(lambda: self._subscriptions.save(subscription))
        logger.info("Trial started", extra={
            "owner_id": self.owner_id,
            "subscription_id": saved.id,
            "tier": tier.value,
            "trial_ends": saved.end_date.isoformat(),
        })
        return saved

    def expire_trial(self, expired_on: Optional[date] = None) -> Subscription:
        """Trial ended without a payment method: trialing -> trial_expired."""
        subscription = self._require_current()
        return self._transition(
            subscription,
            SubscriptionStatus.TRIAL_EXPIRED,
            BillingEventType.TRIAL_EXPIRED,
            end_date=expired_on or date.today(),
            auto_renew=False,
        )

    # ------------------------------------------------------------------
    # Activation and payments
    # ------------------------------------------------------------------

    def activate(
        self,
        tier: Union[Tier, str],
        billing_cycle: BillingCycle = BillingCycle.ANNUALLY,
        quantity: Optional[int] = None,
        amount: Optional[Decimal] = None,
        end_date: Optional[date] = None,
        start_date: Optional[date] = None,
    ) -> Subscription:
        """
        Start a paid subscription.

        Converts a trialing subscription in place when the tier is
        unchanged; a conversion to a different tier supersedes the trial.
        Raises SubscriptionConflictError if the owner already pays.
        """
        tier = coerce_tier(tier)
        current = self._subscriptions.get_current(self.owner_id)
        today = start_date or date.today()

        if current is None:
            subscription = self._new_subscription(
                tier=tier,
                status=SubscriptionStatus.ACTIVE,
                billing_cycle=billing_cycle,
                start_date=today,
                end_date=end_date,
                quantity=quantity,
                amount=amount,
            )
            self._log_billing_event(
                event_type=BillingEventType.SUBSCRIPTION_ACTIVATED,
                subscription_id=subscription.id,
                to_tier=tier,
                amount=amount,
                metadata={"billing_cycle": BillingCycle(billing_cycle).value},
            )
            saved = self._open_current(lambda: self._subscriptions.save(subscription))
            logger.info("Subscription activated", extra={
                "owner_id": self.owner_id,
                "subscription_id": saved.id,
                "tier": tier.value,
            })
            return saved

        if current.status != SubscriptionStatus.TRIALING:
            raise SubscriptionConflictError(self.owner_id, current.id)

        if current.tier == tier:
            return self._transition(
                current,
                SubscriptionStatus.ACTIVE,
                BillingEventType.TRIAL_CONVERTED,
                metadata={"tier": tier.value},
                billing_cycle=BillingCycle(billing_cycle),
                end_date=end_date,
                quantity=quantity,
                amount=Decimal(amount) if amount is not None else None,
                auto_renew=True,
            )

        return self._supersede(
            current,
            self._new_subscription(
                tier=tier,
                status=SubscriptionStatus.ACTIVE,
                billing_cycle=billing_cycle,
                start_date=today,
                end_date=end_date,
                quantity=quantity,
                amount=amount,
            ),
            BillingEventType.TRIAL_CONVERTED,
            closed_on=today,
        )

    def record_payment_failure(self, reason: str = "payment_failed") -> Subscription:
        """active -> past_due. Features are withheld until payment recovers."""
        subscription = self._require_current()
        updated = self._transition(
            subscription,
            SubscriptionStatus.PAST_DUE,
            BillingEventType.PAYMENT_FAILED,
            metadata={"reason": reason},
        )
        logger.warning("Subscription past due after payment failure", extra={
            "owner_id": self.owner_id,
            "subscription_id": subscription.id,
            "reason": reason,
        })
        return updated

    def recover_payment(self, amount: Optional[Decimal] = None) -> Subscription:
        """past_due -> active once the outstanding payment clears."""
        subscription = self._require_current()
        return self._transition(
            subscription,
            SubscriptionStatus.ACTIVE,
            BillingEventType.PAYMENT_RECOVERED,
            metadata={"amount": str(amount) if amount is not None else None},
        )

    def mark_unpaid(self) -> Subscription:
        """past_due -> unpaid when the grace period is exhausted."""
        subscription = self._require_current()
        return self._transition(
            subscription,
            SubscriptionStatus.UNPAID,
            BillingEventType.SUBSCRIPTION_UNPAID,
        )

    def renew(self, end_date: date, amount: Optional[Decimal] = None) -> Subscription:
        """Extend an active subscription to a new end date."""
        subscription = self._require_current()
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise InvalidStatusTransitionError(
                subscription.status.value, SubscriptionStatus.ACTIVE.value
            )
        if subscription.end_date and end_date <= subscription.end_date:
            raise ValueError("renewal end_date must be after the current end_date")

        updated = replace(
            subscription,
            end_date=end_date,
            amount=Decimal(amount) if amount is not None else subscription.amount,
        )
        self._log_billing_event(
            event_type=BillingEventType.SUBSCRIPTION_RENEWED,
            subscription_id=subscription.id,
            amount=amount,
            metadata={
                "old_end_date": subscription.end_date.isoformat() if subscription.end_date else None,
                "new_end_date": end_date.isoformat(),
            },
        )
        saved = self._subscriptions.save(updated)
        logger.info("Subscription renewed", extra={
            "owner_id": self.owner_id,
            "subscription_id": subscription.id,
            "end_date": end_date.isoformat(),
        })
        return saved

    def cancel(self, reason: Optional[str] = None, cancelled_on: Optional[date] = None) -> Subscription:
        """Close the current subscription. The record is kept, never deleted."""
        subscription = self._require_current()
        return self._transition(
            subscription,
            SubscriptionStatus.CANCELLED,
            BillingEventType.SUBSCRIPTION_CANCELLED,
            metadata={"reason": reason},
            end_date=cancelled_on or date.today(),
            auto_renew=False,
        )

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------

    def change_plan(
        self,
        new_tier: Union[Tier, str],
        billing_cycle: Optional[BillingCycle] = None,
        quantity: Optional[int] = None,
        amount: Optional[Decimal] = None,
        effective_date: Optional[date] = None,
    ) -> Subscription:
        """
        Move an active subscription to another tier or billing cycle.

        The old record is closed and a new one opened in one transaction.
        Negotiated capacity overrides belong to the old contract and are not
        carried over.
        """
        new_tier = coerce_tier(new_tier)
        current = self._require_current()
        if current.status != SubscriptionStatus.ACTIVE:
            raise InvalidStatusTransitionError(
                current.status.value, SubscriptionStatus.ACTIVE.value
            )

        cycle = BillingCycle(billing_cycle) if billing_cycle else current.billing_cycle
        if new_tier == current.tier and cycle == current.billing_cycle:
            raise ValueError("plan change must alter the tier or the billing cycle")

        change = self._resolver.classify_plan_change(current.tier, new_tier)
        today = effective_date or date.today()
        opened = self._new_subscription(
            tier=new_tier,
            status=SubscriptionStatus.ACTIVE,
            billing_cycle=cycle,
            start_date=today,
            quantity=quantity if quantity is not None else current.quantity,
            amount=amount,
            auto_renew=current.auto_renew,
        )
        return self._supersede(
            current,
            opened,
            _PLAN_CHANGE_EVENTS[change],
            closed_on=today,
            metadata={
                "change": change.value,
                "features_lost": [f.value for f in self._resolver.features_lost(current.tier, new_tier)],
                "features_gained": [f.value for f in self._resolver.features_gained(current.tier, new_tier)],
            },
        )

    def reactivate(
        self,
        tier: Optional[Union[Tier, str]] = None,
        billing_cycle: Optional[BillingCycle] = None,
        quantity: Optional[int] = None,
        amount: Optional[Decimal] = None,
        end_date: Optional[date] = None,
    ) -> Subscription:
        """
        Start a new subscription after a cancellation.

        The cancelled record stays as it is; the new one defaults to the
        previous tier and billing cycle.
        """
        self._ensure_no_current()
        previous = self._subscriptions.get_latest(self.owner_id)
        if previous is None or previous.status != SubscriptionStatus.CANCELLED:
            raise SubscriptionNotFoundError(self.owner_id, "no cancelled subscription to reactivate")

        new_tier = coerce_tier(tier if tier is not None else previous.tier)
        subscription = self._new_subscription(
            tier=new_tier,
            status=SubscriptionStatus.ACTIVE,
            billing_cycle=billing_cycle or previous.billing_cycle,
            start_date=date.today(),
            end_date=end_date,
            quantity=quantity if quantity is not None else previous.quantity,
            amount=amount,
        )
        self._log_billing_event(
            event_type=BillingEventType.SUBSCRIPTION_REACTIVATED,
            subscription_id=subscription.id,
            from_tier=previous.tier,
            to_tier=new_tier,
            amount=amount,
            metadata={"previous_subscription_id": previous.id},
        )
        saved = self._open_current(lambda: self._subscriptions.save(subscription))
        logger.info("Subscription reactivated", extra={
            "owner_id": self.owner_id,
            "subscription_id": saved.id,
            "previous_subscription_id": previous.id,
            "tier": new_tier.value,
        })
        return saved

    def _supersede(
        self,
        current: Subscription,
        opened: Subscription,
        event_type: str,
        closed_on: date,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        ensure_transition(current.status, SubscriptionStatus.CANCELLED)
        closed = replace(
            current,
            status=SubscriptionStatus.CANCELLED,
            end_date=closed_on,
            auto_renew=False,
        )
        self._log_billing_event(
            event_type=event_type,
            subscription_id=current.id,
            from_tier=current.tier,
            to_tier=opened.tier,
            amount=opened.amount,
            metadata={
                "new_subscription_id": opened.id,
                "old_status": current.status.value,
                **(metadata or {}),
            },
        )
        return self._open_current(lambda: self._subscriptions.supersede(closed, opened))
