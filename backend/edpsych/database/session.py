"""
Engine and per-request session handling.

``create_app`` builds the engine and session factory during lifespan startup
and keeps the factory on ``app.state.session_factory``. Route handlers and
the entitlement dependencies take a session through ``get_db_session``.
"""

import logging
from typing import Generator, Optional

from fastapi import HTTPException, Request, status
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

POOL_SIZE = 5
POOL_OVERFLOW = 10
POOL_RECYCLE_SECONDS = 1800


def create_db_engine(database_url: str) -> Engine:
    """SQLite for local runs and tests, a pre-pinged pool for PostgreSQL."""
    if database_url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
    else:
        options = {
            "pool_size": POOL_SIZE,
            "max_overflow": POOL_OVERFLOW,
            "pool_pre_ping": True,
            "pool_recycle": POOL_RECYCLE_SECONDS,
        }
    engine = create_engine(database_url, **options)
    logger.info("Database engine created", extra={"dialect": engine.dialect.name})
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db_session(request: Request) -> Generator[Session, None, None]:
    """Yield a session for one request; 503 when no database is configured."""
    factory: Optional[sessionmaker] = getattr(request.app.state, "session_factory", None)
    if factory is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured",
        )

    session = factory()
    try:
        yield session
    finally:
        session.close()


def init_database(engine: Engine) -> list:
    """
    Create any missing entitlement tables and return their names.

    Existing tables are left as they are; column changes need a migration.
    """
    from edpsych.models import Base  # registers every table

    table_names = sorted(Base.metadata.tables)
    logger.info("Creating or verifying tables", extra={"tables": table_names})
    Base.metadata.create_all(bind=engine)
    return table_names
