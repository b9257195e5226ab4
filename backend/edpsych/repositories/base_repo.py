"""
Base repository: get / save / list over domain records.

Repositories return frozen domain dataclasses, never ORM rows, so callers
cannot mutate persisted state behind the repository's back.

CRITICAL: owner_id must come from the verified identity, never from
client input. Every owner-facing query filters on it.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, Sequence, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

logger = logging.getLogger(__name__)

# Domain record type returned by a repository
T = TypeVar("T")

MAX_PAGE_SIZE = 200


@dataclass(frozen=True)
class ListQuery:
    """
    Filter / sort / pagination options for Repository.list.

    filters maps field name to a value or a list of accepted values.
    """

    filters: Dict[str, Any] = field(default_factory=dict)
    sort_by: str = "created_at"
    descending: bool = True
    page: int = 1
    page_size: int = 20

    def __post_init__(self):
        if self.page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass(frozen=True)
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.total else 0


class Repository(Generic[T], ABC):
    """Abstract persistence interface for a domain record type."""

    @abstractmethod
    def get(self, entity_id: str) -> Optional[T]:
        """Return the record with this id, or None."""

    @abstractmethod
    def save(self, entity: T) -> T:
        """Insert or update the record and return the persisted version."""

    @abstractmethod
    def list(self, query: ListQuery) -> Page[T]:
        """Return one page of records matching the query."""


class SQLAlchemyRepository(Repository[T], ABC):
    """
    Repository backed by a SQLAlchemy session.

    Subclasses declare the model, the mapping to the domain record and the
    fields callers may filter and sort on.
    """

    filterable_fields: Sequence[str] = ()
    sortable_fields: Sequence[str] = ("created_at",)

    def __init__(self, db_session: Session):
        self.db = db_session

    @abstractmethod
    def _get_model_class(self) -> type:
        """Return the SQLAlchemy model class for this repository."""

    @abstractmethod
    def _to_domain(self, row) -> T:
        """Map an ORM row to its domain record."""

    def _apply_list_query(self, query: Query, list_query: ListQuery) -> Query:
        model = self._get_model_class()

        for name, value in list_query.filters.items():
            if name not in self.filterable_fields:
                raise ValueError(f"Cannot filter on '{name}'")
            column = getattr(model, name)
            if isinstance(value, (list, tuple, set, frozenset)):
                query = query.filter(column.in_([getattr(v, "value", v) for v in value]))
            else:
                query = query.filter(column == getattr(value, "value", value))

        if list_query.sort_by not in self.sortable_fields:
            raise ValueError(f"Cannot sort on '{list_query.sort_by}'")
        sort_column = getattr(model, list_query.sort_by)
        primary = sort_column.desc() if list_query.descending else sort_column.asc()
        # id keeps the order stable when sort values collide
        return query.order_by(primary, model.id.asc())

    def list(self, list_query: ListQuery) -> Page[T]:
        query = self._apply_list_query(self.db.query(self._get_model_class()), list_query)
        total = query.order_by(None).count()
        rows = query.offset(list_query.offset).limit(list_query.page_size).all()
        return Page(
            items=[self._to_domain(row) for row in rows],
            total=total,
            page=list_query.page,
            page_size=list_query.page_size,
        )

    def _commit(self, operation: str, **context) -> None:
        """Commit the session, rolling back and re-raising on failure."""
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Repository commit failed",
                extra={
                    "operation": operation,
                    "entity_type": self._get_model_class().__name__,
                    "error": str(e),
                    **context,
                },
            )
            raise
