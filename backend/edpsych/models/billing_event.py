"""
Subscription and entitlement event log.

Rows are only ever inserted. Lifecycle changes made by SubscriptionService
and denials reported by EntitlementAuditLogger both land here, so the table
answers "what happened to this organisation's plan, and when".
"""

from sqlalchemy import Column, String, Integer, DateTime, Enum, Text, JSON, ForeignKey, Index
from sqlalchemy.orm import relationship

from edpsych.models.base import Base, OwnerScopedMixin, generate_uuid, utcnow


class BillingEventType:
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_UPGRADED = "subscription_upgraded"
    SUBSCRIPTION_DOWNGRADED = "subscription_downgraded"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
    SUBSCRIPTION_UNPAID = "subscription_unpaid"
    PLAN_CHANGED = "plan_changed"

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECOVERED = "payment_recovered"

    TRIAL_STARTED = "trial_started"
    TRIAL_EXPIRED = "trial_expired"
    TRIAL_CONVERTED = "trial_converted"

    ACCESS_DENIED = "entitlement.access_denied"

    ALL = tuple(
        value for name, value in list(vars().items())
        if name.isupper() and isinstance(value, str)
    )


class ActorType:
    """Who caused an event: a signed-in user, the service itself, a billing webhook or a scheduled job."""
    USER = "user"
    SYSTEM = "system"
    WEBHOOK = "webhook"
    CRON = "cron"

    ALL = (USER, SYSTEM, WEBHOOK, CRON)


class BillingEvent(Base, OwnerScopedMixin):
    """
    One entry in an organisation's event log.

    occurred_at is when the change took effect and recorded_at is when the
    row was written; webhook deliveries can make the two differ.
    """

    __tablename__ = "billing_events"
    __table_args__ = (
        Index("ix_billing_events_owner_type", "owner_id", "event_type"),
        Index("ix_billing_events_owner_occurred", "owner_id", "occurred_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    event_type = Column(
        Enum(*BillingEventType.ALL, name="billing_event_type", native_enum=False),
        nullable=False,
        index=True,
    )
    # Denials are logged against the owner only.
    subscription_id = Column(
        String(36),
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    occurred_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    created_at = Column("recorded_at", DateTime(timezone=True), nullable=False, default=utcnow)

    from_tier = Column(String(50))
    to_tier = Column(String(50))
    amount_pence = Column(Integer)
    currency = Column(String(3), default="GBP")

    actor_type = Column(Enum(*ActorType.ALL, name="actor_type", native_enum=False), default=ActorType.SYSTEM)
    actor_id = Column(String(255), comment="user id, webhook event id or job name")

    description = Column(Text)
    extra_metadata = Column(JSON)

    subscription = relationship("OrganisationSubscription")

    def __repr__(self) -> str:
        return f"<BillingEvent {self.event_type} owner={self.owner_id} at={self.occurred_at}>"
