"""
CapacityUsageCounter model - per-owner resource counters.

Counters are mutated only through CapacityUsageRepository, whose increment
is a single conditional UPDATE so concurrent provisioning cannot overshoot
a cap.
"""

from sqlalchemy import Column, String, Integer, CheckConstraint, UniqueConstraint

from edpsych.entitlements.models import CapacityUsage
from edpsych.models.base import Base, TimestampMixin, OwnerScopedMixin, generate_uuid


class CapacityUsageCounter(Base, TimestampMixin, OwnerScopedMixin):
    """Current users, students and schools for one owner."""

    __tablename__ = "capacity_usage"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    current_users = Column(Integer, nullable=False, default=0)
    current_students = Column(Integer, nullable=False, default=0)
    current_schools = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("owner_id", name="uq_capacity_usage_owner"),
        CheckConstraint("current_users >= 0", name="ck_capacity_usage_users"),
        CheckConstraint("current_students >= 0", name="ck_capacity_usage_students"),
        CheckConstraint("current_schools >= 0", name="ck_capacity_usage_schools"),
    )

    def __repr__(self) -> str:
        return (
            f"<CapacityUsageCounter(owner_id={self.owner_id}, users={self.current_users}, "
            f"students={self.current_students}, schools={self.current_schools})>"
        )

    def to_domain(self) -> CapacityUsage:
        return CapacityUsage(
            owner_id=self.owner_id,
            current_users=self.current_users or 0,
            current_students=self.current_students or 0,
            current_schools=self.current_schools or 0,
        )
