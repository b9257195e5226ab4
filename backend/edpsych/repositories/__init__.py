"""Repositories: persistence for domain records."""

from edpsych.repositories.base_repo import ListQuery, Page, Repository, SQLAlchemyRepository
from edpsych.repositories.subscription_repository import SubscriptionRepository
from edpsych.repositories.capacity_repository import CapacityUsageRepository

__all__ = [
    "ListQuery",
    "Page",
    "Repository",
    "SQLAlchemyRepository",
    "SubscriptionRepository",
    "CapacityUsageRepository",
]
