"""
Process settings read from the environment.

All values are read once when the application is created. Nothing here is
required at import time so tests can build Settings directly.
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_JWT_ALGORITHM = "HS256"


def normalize_database_url(database_url: Optional[str]) -> Optional[str]:
    """
    Normalize a database URL for SQLAlchemy.

    Handles the postgres:// scheme some hosts hand out by converting it to
    postgresql://.
    """
    if not database_url:
        return None
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    catalogue_path: Optional[str] = None
    log_level: str = "INFO"
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = DEFAULT_JWT_ALGORITHM
    webhook_secret: Optional[str] = None
    # Seconds during which repeated identical denials are logged once
    audit_aggregation_seconds: int = 0
    cors_origins: Tuple[str, ...] = ("http://localhost:3000",)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        window = env.get("AUDIT_AGGREGATION_SECONDS", "0")
        try:
            aggregation = max(int(window), 0)
        except ValueError:
            logger.warning(
                "Ignoring invalid AUDIT_AGGREGATION_SECONDS",
                extra={"value": window},
            )
            aggregation = 0

        return cls(
            database_url=normalize_database_url(env.get("DATABASE_URL")),
            catalogue_path=env.get("CATALOGUE_PATH") or None,
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            jwt_secret=env.get("AUTH_JWT_SECRET") or None,
            jwt_algorithm=env.get("AUTH_JWT_ALGORITHM") or DEFAULT_JWT_ALGORITHM,
            webhook_secret=env.get("BILLING_WEBHOOK_SECRET") or None,
            audit_aggregation_seconds=aggregation,
            cors_origins=tuple(
                origin.strip()
                for origin in env.get("CORS_ORIGINS", "http://localhost:3000").split(",")
                if origin.strip()
            ),
        )
