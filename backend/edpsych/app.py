"""
FastAPI application factory.

The catalogue, resolver, audit logger, token verifier and database
session factory are built once in the lifespan and stored on app.state.
A catalogue that fails validation stops startup.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from edpsych import __version__
from edpsych.api.routes import billing_webhooks, health, subscription
from edpsych.config.settings import Settings
from edpsych.database.session import create_db_engine, create_session_factory
from edpsych.entitlements.audit import EntitlementAuditLogger
from edpsych.entitlements.catalogue import Catalogue, load_catalogue
from edpsych.entitlements.dependencies import GATED_FEATURES
from edpsych.entitlements.errors import EntitlementDeniedError
from edpsych.entitlements.resolver import EntitlementResolver
from edpsych.platform.owner_context import OwnerTokenVerifier
from edpsych.services.entitlement_service import EntitlementEvaluationError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


def create_app(
    settings: Optional[Settings] = None,
    catalogue: Optional[Catalogue] = None,
    session_factory: Optional[sessionmaker] = None,
) -> FastAPI:
    """
    Build the API application.

    Tests pass a catalogue and session factory directly; in production both
    come from Settings (CATALOGUE_PATH, DATABASE_URL).
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting EdPsych entitlements API")
        app.state.settings = settings

        # Raises CatalogueConfigError on any inconsistency
        loaded = catalogue or load_catalogue(settings.catalogue_path)
        loaded.validate_feature_references(sorted(GATED_FEATURES), context="route gates")
        app.state.catalogue = loaded
        app.state.resolver = EntitlementResolver(loaded)

        engine = None
        factory = session_factory
        if factory is None and settings.database_url:
            engine = create_db_engine(settings.database_url)
            factory = create_session_factory(engine)
        elif factory is None:
            logger.error(
                "DATABASE_URL is not set. Subscription endpoints will return 503."
            )
        app.state.session_factory = factory

        app.state.audit_logger = EntitlementAuditLogger(
            db_session_factory=factory,
            aggregation_window_seconds=settings.audit_aggregation_seconds,
        )

        if settings.jwt_secret:
            app.state.token_verifier = OwnerTokenVerifier(
                settings.jwt_secret, settings.jwt_algorithm
            )
        else:
            app.state.token_verifier = None
            logger.warning(
                "AUTH_JWT_SECRET not set. Protected endpoints will return 503."
            )

        logger.info("Entitlements ready", extra={
            "catalogue_version": loaded.version,
            "catalogue_source": loaded.source,
            "gated_features": sorted(GATED_FEATURES),
            "database_configured": factory is not None,
            "auth_configured": app.state.token_verifier is not None,
        })

        yield

        if engine is not None:
            engine.dispose()
        logger.info("Shutting down EdPsych entitlements API")

    app = FastAPI(
        title="EdPsych Entitlements API",
        description="Subscription tiers, feature entitlements and capacity limits",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(subscription.router)
    app.include_router(billing_webhooks.router)

    @app.exception_handler(EntitlementDeniedError)
    async def entitlement_denied_handler(request: Request, exc: EntitlementDeniedError):
        return JSONResponse(status_code=exc.http_status, content={"detail": exc.to_dict()})

    @app.exception_handler(EntitlementEvaluationError)
    async def entitlement_eval_handler(request: Request, exc: EntitlementEvaluationError):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": exc.to_dict()},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unhandled exceptions with proper logging."""
        owner_id = "unknown"
        if hasattr(request.state, "owner_context"):
            owner_id = request.state.owner_context.owner_id

        logger.error(
            "Unhandled exception",
            extra={
                "owner_id": owner_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
                "path": request.url.path,
            },
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": "An unexpected error occurred",
            },
        )

    return app
