"""
Declarative base and shared column helpers for the entitlement tables.

Every table module imports ``Base`` from here; importing ``edpsych.models``
registers all of them on ``Base.metadata``.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, TypeDecorator
from sqlalchemy.orm import declarative_base, declared_attr

from edpsych.entitlements.models import UNLIMITED, parse_limit, serialize_limit

Base = declarative_base()


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CapacityLimitType(TypeDecorator):
    """
    Column type for a per-organisation capacity limit.

    Values are either a non-negative int or the UNLIMITED sentinel. They are
    written as text ("250" / "unlimited") so that no number has to double as
    "no cap" in the database.
    """
    impl = String(20)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(serialize_limit(parse_limit(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value == UNLIMITED.value:
            return UNLIMITED
        return parse_limit(int(value))


class TimestampMixin:
    """created_at / updated_at, stamped in UTC by the application."""

    # Python-side defaults keep microsecond ordering on SQLite as well.
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class OwnerScopedMixin:
    """
    Adds the owner_id column every entitlement row is partitioned by.

    The owner is the school, trust, authority or individual researcher the
    request was authenticated as. Repositories filter on it for every read;
    request handlers only ever take it from OwnerContext.
    """

    @declared_attr
    def owner_id(cls):
        return Column(String(255), nullable=False, index=True, comment="Owning organisation or researcher")
