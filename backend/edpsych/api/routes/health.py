"""
Health check endpoint (no authentication).
"""

import logging

from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    """
    Report liveness plus catalogue and database readiness.

    Always 200 so load balancers keep routing; "status" is "degraded" when
    the database is unreachable.
    """
    catalogue = getattr(request.app.state, "catalogue", None)
    factory = getattr(request.app.state, "session_factory", None)

    database = "not_configured"
    if factory is not None:
        session = factory()
        try:
            session.execute(text("SELECT 1"))
            database = "ok"
        except SQLAlchemyError as e:
            logger.warning("Health check database query failed", extra={"error": str(e)})
            database = "unavailable"
        finally:
            session.close()

    return {
        "status": "ok" if database != "unavailable" else "degraded",
        "catalogue_version": catalogue.version if catalogue else None,
        "database": database,
    }
