"""
FeatureUsage model - append-only log of feature use per owner.

Written best-effort by EntitlementService.record_feature_usage; a failed
write never blocks the request that used the feature.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, JSON, Index

from edpsych.models.base import Base, OwnerScopedMixin, generate_uuid


class FeatureUsage(Base, OwnerScopedMixin):

    __tablename__ = "feature_usage"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    feature = Column(String(64), nullable=False, index=True)
    user_id = Column(String(255), nullable=True, comment="Acting user, when known")

    used_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    extra_metadata = Column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_feature_usage_owner_feature", "owner_id", "feature"),
    )

    def __repr__(self) -> str:
        return f"<FeatureUsage(owner_id={self.owner_id}, feature={self.feature})>"
