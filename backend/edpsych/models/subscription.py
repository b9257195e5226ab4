"""
OrganisationSubscription model - persisted subscription records.

CRITICAL: At most one current subscription (trialing, active, past_due or
unpaid) per owner, enforced by a partial unique index. Records are never
deleted: cancellation sets status=cancelled and an end date, and plan
changes close the old row before opening a new one.
"""

from sqlalchemy import (
    Column, String, Integer, Date, Numeric, Boolean, Enum, Index, text
)

from edpsych.entitlements.models import (
    CURRENT_STATUSES,
    BillingCycle,
    Subscription,
    SubscriptionStatus,
    Tier,
)
from edpsych.models.base import (
    Base,
    CapacityLimitType,
    OwnerScopedMixin,
    TimestampMixin,
    generate_uuid,
)


_CURRENT_PREDICATE = "status IN (%s)" % ", ".join(
    sorted("'%s'" % s.value for s in CURRENT_STATUSES)
)


class OrganisationSubscription(Base, TimestampMixin, OwnerScopedMixin):
    """
    Subscription row for a school, trust, local authority or research owner.

    The tier column is deliberately a plain string: a row written by an
    older catalogue must still load so the resolver can deny it with
    reason unrecognized_tier instead of failing the request.
    """

    __tablename__ = "subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    tier = Column(
        String(50),
        nullable=False,
        index=True,
        comment="Tier identifier from the catalogue"
    )

    status = Column(
        Enum(
            *[s.value for s in SubscriptionStatus],
            name="subscription_status",
            native_enum=False,
        ),
        nullable=False,
        index=True,
        comment="Lifecycle status; transitions validated by entitlements.lifecycle"
    )

    billing_cycle = Column(
        Enum(
            *[c.value for c in BillingCycle],
            name="billing_cycle",
            native_enum=False,
        ),
        nullable=False,
        default=BillingCycle.ANNUALLY.value,
        comment="monthly, termly or annually"
    )

    start_date = Column(Date, nullable=False, comment="First day of entitlement")
    end_date = Column(Date, nullable=True, comment="Last day of entitlement, set on close")

    quantity = Column(Integer, nullable=True, comment="Seats purchased, if seat-priced")
    amount = Column(Numeric(10, 2), nullable=True, comment="Price per billing cycle in GBP")
    auto_renew = Column(Boolean, nullable=False, default=True)

    # Negotiated per-contract caps; NULL falls back to the tier default
    max_users = Column(CapacityLimitType(), nullable=True)
    max_students = Column(CapacityLimitType(), nullable=True)
    max_schools = Column(CapacityLimitType(), nullable=True)

    __table_args__ = (
        Index("ix_subscriptions_owner_status", "owner_id", "status"),
        Index(
            "uq_subscriptions_owner_current",
            "owner_id",
            unique=True,
            sqlite_where=text(_CURRENT_PREDICATE),
            postgresql_where=text(_CURRENT_PREDICATE),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<OrganisationSubscription(id={self.id}, owner_id={self.owner_id}, "
            f"tier={self.tier}, status={self.status})>"
        )

    def to_domain(self) -> Subscription:
        """
        Map to the domain record.

        Unknown tier strings are passed through unchanged for the resolver
        to deny.
        """
        try:
            tier = Tier(self.tier)
        except ValueError:
            tier = self.tier

        return Subscription(
            id=self.id,
            owner_id=self.owner_id,
            tier=tier,
            status=SubscriptionStatus(self.status),
            billing_cycle=BillingCycle(self.billing_cycle),
            start_date=self.start_date,
            end_date=self.end_date,
            quantity=self.quantity,
            amount=self.amount,
            auto_renew=bool(self.auto_renew),
            max_users=self.max_users,
            max_students=self.max_students,
            max_schools=self.max_schools,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_domain(cls, subscription: Subscription) -> "OrganisationSubscription":
        row = cls(id=subscription.id, owner_id=subscription.owner_id)
        row.apply(subscription)
        return row

    def apply(self, subscription: Subscription) -> None:
        """Copy mutable fields from a domain record onto this row."""
        self.tier = getattr(subscription.tier, "value", subscription.tier)
        self.status = SubscriptionStatus(subscription.status).value
        self.billing_cycle = BillingCycle(subscription.billing_cycle).value
        self.start_date = subscription.start_date
        self.end_date = subscription.end_date
        self.quantity = subscription.quantity
        self.amount = subscription.amount
        self.auto_renew = subscription.auto_renew
        self.max_users = subscription.max_users
        self.max_students = subscription.max_students
        self.max_schools = subscription.max_schools
