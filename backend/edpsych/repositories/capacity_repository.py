"""
Capacity usage repository.

increment_if_within is the atomic check-and-increment provisioning code
must use: one conditional UPDATE, so two concurrent requests cannot both
take the last seat.
"""

import logging
from typing import Optional

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError

from edpsych.entitlements.models import UNLIMITED, CapacityUsage, Limit, ResourceKind
from edpsych.models.capacity_usage import CapacityUsageCounter
from edpsych.repositories.base_repo import SQLAlchemyRepository

logger = logging.getLogger(__name__)


class CapacityUsageRepository(SQLAlchemyRepository[CapacityUsage]):
    """Per-owner resource counters. Rows are created lazily at zero."""

    filterable_fields = ("owner_id",)
    sortable_fields = ("created_at", "owner_id")

    def _get_model_class(self) -> type:
        return CapacityUsageCounter

    def _to_domain(self, row: CapacityUsageCounter) -> CapacityUsage:
        return row.to_domain()

    def _row_for_owner(self, owner_id: str) -> Optional[CapacityUsageCounter]:
        return self.db.query(CapacityUsageCounter).filter(
            CapacityUsageCounter.owner_id == owner_id
        ).first()

    def get(self, owner_id: str) -> Optional[CapacityUsage]:
        """Usage for an owner, or None if nothing has been provisioned yet."""
        row = self._row_for_owner(owner_id)
        return row.to_domain() if row else None

    def get_or_empty(self, owner_id: str) -> CapacityUsage:
        return self.get(owner_id) or CapacityUsage(owner_id=owner_id)

    def save(self, entity: CapacityUsage) -> CapacityUsage:
        """Overwrite all counters for an owner (reconciliation jobs)."""
        row = self._row_for_owner(entity.owner_id)
        if row is None:
            row = CapacityUsageCounter(owner_id=entity.owner_id)
            self.db.add(row)
        for kind in ResourceKind:
            value = entity.get(kind)
            if value < 0:
                raise ValueError(f"{kind.counter_key} cannot be negative")
            setattr(row, kind.counter_key, value)
        self._commit("save", owner_id=entity.owner_id)
        return row.to_domain()

    def _ensure_row(self, owner_id: str) -> None:
        if self._row_for_owner(owner_id) is not None:
            return
        self.db.add(CapacityUsageCounter(
            owner_id=owner_id,
            current_users=0,
            current_students=0,
            current_schools=0,
        ))
        try:
            self._commit("create", owner_id=owner_id)
        except IntegrityError:
            # Another request created the row first; _commit rolled back ours
            if self._row_for_owner(owner_id) is None:
                raise

    def increment_if_within(
        self,
        owner_id: str,
        resource_kind: ResourceKind,
        amount: int,
        limit: Limit,
    ) -> bool:
        """
        Atomically add ``amount`` if the result stays within ``limit``.

        Returns True when the counter was incremented. Caps are inclusive:
        reaching the limit exactly is allowed.
        """
        if amount < 1:
            raise ValueError("amount must be positive")

        self._ensure_row(owner_id)
        column = getattr(CapacityUsageCounter, resource_kind.counter_key)

        stmt = update(CapacityUsageCounter).where(CapacityUsageCounter.owner_id == owner_id)
        if limit is not UNLIMITED:
            stmt = stmt.where(column + amount <= limit)
        stmt = stmt.values({resource_kind.counter_key: column + amount})

        result = self.db.execute(stmt.execution_options(synchronize_session=False))
        applied = result.rowcount == 1
        self._commit(
            "increment",
            owner_id=owner_id,
            resource_kind=resource_kind.value,
        )
        self.db.expire_all()
        return applied

    def release(self, owner_id: str, resource_kind: ResourceKind, amount: int) -> None:
        """Subtract ``amount``; the counter never drops below zero."""
        if amount < 1:
            raise ValueError("amount must be positive")

        column = getattr(CapacityUsageCounter, resource_kind.counter_key)
        stmt = (
            update(CapacityUsageCounter)
            .where(CapacityUsageCounter.owner_id == owner_id)
            .values({
                resource_kind.counter_key: case(
                    (column - amount < 0, 0),
                    else_=column - amount,
                )
            })
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)
        self._commit("release", owner_id=owner_id, resource_kind=resource_kind.value)
        self.db.expire_all()
