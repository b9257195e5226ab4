"""
Entitlement check dependencies.

Provides reusable FastAPI dependencies for entitlement checks. The
catalogue, resolver and audit logger are built once in the application
lifespan and read from app.state here.

Usage:
    @router.get("/reports/export")
    def export(owner=Depends(require_feature(Feature.DATA_EXPORT))):
        ...

Every feature passed to require_feature() is recorded in GATED_FEATURES
and validated against the catalogue at startup.
"""

import logging
from typing import Callable, Set, Union

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from edpsych.database.session import get_db_session
from edpsych.entitlements.audit import EntitlementAuditLogger
from edpsych.entitlements.catalogue import Catalogue
from edpsych.entitlements.errors import EntitlementDeniedError
from edpsych.entitlements.models import DenialReason, Feature, FeatureAccessResult
from edpsych.entitlements.resolver import EntitlementResolver
from edpsych.platform.owner_context import OwnerContext, get_owner_context
from edpsych.services.capacity_service import CapacityService
from edpsych.services.entitlement_service import EntitlementService

logger = logging.getLogger(__name__)

# Feature identifiers referenced by route gates, checked in the lifespan
GATED_FEATURES: Set[str] = set()


def _app_state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        logger.error("Entitlements not initialised", extra={"missing": name})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Entitlements not initialised",
        )
    return value


def get_catalogue(request: Request) -> Catalogue:
    return _app_state(request, "catalogue")


def get_resolver(request: Request) -> EntitlementResolver:
    return _app_state(request, "resolver")


def get_audit_logger(request: Request) -> EntitlementAuditLogger:
    return _app_state(request, "audit_logger")


def get_entitlement_service(
    db_session: Session = Depends(get_db_session),
    resolver: EntitlementResolver = Depends(get_resolver),
    audit_logger: EntitlementAuditLogger = Depends(get_audit_logger),
) -> EntitlementService:
    return EntitlementService(db_session, resolver, audit_logger)


def require_feature(feature: Union[Feature, str]) -> Callable:
    """
    Factory for a dependency that admits a request only if its owner has
    access to ``feature``.

    Denials raise HTTP 402 with the upgrade prompt payload. When the
    subscription store is unavailable the request fails closed with 503.
    Returns the OwnerContext when access is granted.
    """
    feature_id = feature.value if isinstance(feature, Feature) else str(feature)
    GATED_FEATURES.add(feature_id)

    def check_entitlement(
        request: Request,
        owner: OwnerContext = Depends(get_owner_context),
        service: EntitlementService = Depends(get_entitlement_service),
    ) -> OwnerContext:
        result = service.check_feature(
            owner.owner_id,
            feature_id,
            user_id=owner.user_id,
            endpoint=request.url.path,
            method=request.method,
        )
        if result.granted:
            return owner
        raise denial_exception(result)

    check_entitlement.__name__ = f"require_{feature_id}"
    return check_entitlement


def denial_exception(result: FeatureAccessResult) -> HTTPException:
    """HTTP error carrying the upgrade prompt payload for a denied feature check."""
    error = EntitlementDeniedError(
        feature=result.feature.value,
        reason=result.reason.value,
        current_tier=getattr(result.current_tier, "value", result.current_tier),
        required_tier=result.required_tier.value if result.required_tier else None,
        action=result.action.value if result.action else None,
        detail={
            "feature_name": result.feature_name,
            "current_tier_name": result.current_tier_name,
            "required_tier_name": result.required_tier_name,
        },
    )
    if result.reason == DenialReason.SUBSCRIPTION_UNAVAILABLE:
        error.http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    return HTTPException(status_code=error.http_status, detail=error.to_dict())


def get_capacity_service(
    db_session: Session = Depends(get_db_session),
    resolver: EntitlementResolver = Depends(get_resolver),
    audit_logger: EntitlementAuditLogger = Depends(get_audit_logger),
) -> CapacityService:
    return CapacityService(db_session, resolver, audit_logger)
