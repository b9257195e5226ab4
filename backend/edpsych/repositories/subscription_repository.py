"""
Subscription repository for data access operations.

Encapsulates all database operations for subscriptions with:
- Owner isolation on every owner-facing lookup
- Domain records (entitlements.models.Subscription) in and out
- Single-transaction supersede for plan changes
"""

import logging
from typing import List, Optional

from sqlalchemy import case

from edpsych.entitlements.models import CURRENT_STATUSES, Subscription, SubscriptionStatus
from edpsych.models.subscription import OrganisationSubscription
from edpsych.repositories.base_repo import MAX_PAGE_SIZE, ListQuery, SQLAlchemyRepository

logger = logging.getLogger(__name__)

_CURRENT_STATUS_VALUES = [s.value for s in CURRENT_STATUSES]
HISTORY_PAGE_SIZE = MAX_PAGE_SIZE


class SubscriptionRepository(SQLAlchemyRepository[Subscription]):
    """
    Repository for subscription records.

    Records are never deleted. Closing a subscription is a save with
    status=cancelled and an end date.
    """

    filterable_fields = ("owner_id", "tier", "status", "billing_cycle")
    sortable_fields = ("created_at", "start_date", "end_date", "tier", "status")

    def _get_model_class(self) -> type:
        return OrganisationSubscription

    def _to_domain(self, row: OrganisationSubscription) -> Subscription:
        return row.to_domain()

    def get(self, entity_id: str) -> Optional[Subscription]:
        row = self.db.get(OrganisationSubscription, entity_id)
        return row.to_domain() if row else None

    def get_for_owner(self, subscription_id: str, owner_id: str) -> Optional[Subscription]:
        """Get a subscription by ID, only if it belongs to owner_id."""
        row = self.db.query(OrganisationSubscription).filter(
            OrganisationSubscription.id == subscription_id,
            OrganisationSubscription.owner_id == owner_id,
        ).first()
        return row.to_domain() if row else None

    def get_current(self, owner_id: str) -> Optional[Subscription]:
        """
        Get the owner's current subscription (active, trialing, past_due or unpaid).

        Only one should exist. If storage holds more, the active one wins,
        then the most recently started, and the anomaly is logged.
        """
        active_first = case(
            (OrganisationSubscription.status == SubscriptionStatus.ACTIVE.value, 0),
            else_=1,
        )
        rows = self.db.query(OrganisationSubscription).filter(
            OrganisationSubscription.owner_id == owner_id,
            OrganisationSubscription.status.in_(_CURRENT_STATUS_VALUES),
        ).order_by(
            active_first,
            OrganisationSubscription.start_date.desc(),
            OrganisationSubscription.created_at.desc(),
        ).all()

        if not rows:
            return None
        if len(rows) > 1:
            logger.warning(
                "Multiple current subscriptions for owner",
                extra={
                    "owner_id": owner_id,
                    "subscription_ids": [r.id for r in rows],
                    "selected": rows[0].id,
                },
            )
        return rows[0].to_domain()

    def get_latest(self, owner_id: str) -> Optional[Subscription]:
        """Most recently started subscription in any status."""
        row = self.db.query(OrganisationSubscription).filter(
            OrganisationSubscription.owner_id == owner_id,
        ).order_by(
            OrganisationSubscription.start_date.desc(),
            OrganisationSubscription.created_at.desc(),
        ).first()
        return row.to_domain() if row else None

    def history(self, owner_id: str) -> List[Subscription]:
        """Every subscription the owner has held, newest first."""
        records: List[Subscription] = []
        page = 1
        while True:
            result = self.list(ListQuery(
                filters={"owner_id": owner_id},
                sort_by="start_date",
                descending=True,
                page=page,
                page_size=HISTORY_PAGE_SIZE,
            ))
            records.extend(result.items)
            if page >= result.pages:
                return records
            page += 1

    def save(self, entity: Subscription) -> Subscription:
        """Insert or update a subscription and commit."""
        row = self._stage(entity)
        self._commit("save", owner_id=entity.owner_id, subscription_id=entity.id)
        logger.info(
            "Subscription saved",
            extra={
                "owner_id": entity.owner_id,
                "subscription_id": entity.id,
                "tier": getattr(entity.tier, "value", entity.tier),
                "status": entity.status.value,
            },
        )
        return row.to_domain()

    def supersede(self, closed: Subscription, opened: Subscription) -> Subscription:
        """
        Close one subscription and open its replacement in one transaction.

        The old row is flushed first so the owner never holds two active
        rows, even transiently.
        """
        if closed.owner_id != opened.owner_id:
            raise ValueError("supersede requires both subscriptions to share an owner")
        if closed.status.is_current:
            raise ValueError("the superseded subscription must be closed")

        self._stage(closed)
        self.db.flush()
        new_row = self._stage(opened)
        self._commit(
            "supersede",
            owner_id=opened.owner_id,
            closed_id=closed.id,
            opened_id=opened.id,
        )
        logger.info(
            "Subscription superseded",
            extra={
                "owner_id": opened.owner_id,
                "closed_id": closed.id,
                "opened_id": opened.id,
                "from_tier": getattr(closed.tier, "value", closed.tier),
                "to_tier": getattr(opened.tier, "value", opened.tier),
            },
        )
        return new_row.to_domain()

    def _stage(self, entity: Subscription) -> OrganisationSubscription:
        row = self.db.get(OrganisationSubscription, entity.id)
        if row is None:
            row = OrganisationSubscription.from_domain(entity)
            self.db.add(row)
        else:
            if row.owner_id != entity.owner_id:
                raise ValueError("subscription owner cannot change")
            row.apply(entity)
        return row
