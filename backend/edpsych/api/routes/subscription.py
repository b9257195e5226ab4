"""
Subscription API routes: plan status, feature checks and capacity.

All routes except the plan catalogue require a bearer JWT; the owner is
always taken from the token.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from edpsych.api.schemas.subscription import (
    CapacityResponse,
    FeatureAccessResponse,
    FeatureUsageRequest,
    FeatureUsageResponse,
    PlanComparisonResponse,
    PlanResponse,
    PlansListResponse,
    SubscriptionResponse,
    SubscriptionStatusResponse,
)
from edpsych.database.session import get_db_session
from edpsych.entitlements.catalogue import Catalogue, TierDefinition
from edpsych.entitlements.dependencies import (
    denial_exception,
    get_capacity_service,
    get_catalogue,
    get_entitlement_service,
    get_resolver,
    require_feature,
)
from edpsych.entitlements.errors import UnknownFeatureError, UnknownTierError
from edpsych.entitlements.models import DenialReason, Feature, ResourceKind, serialize_limit
from edpsych.entitlements.resolver import EntitlementResolver
from edpsych.platform.owner_context import OwnerContext, get_owner_context
from edpsych.repositories.subscription_repository import SubscriptionRepository
from edpsych.services.capacity_service import CapacityService
from edpsych.services.entitlement_service import EntitlementEvaluationError, EntitlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscription", tags=["subscription"])


def _resource_kind(resource: str) -> ResourceKind:
    try:
        return ResourceKind(resource)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown resource: {resource}",
        )


def _plan_response(definition: TierDefinition) -> PlanResponse:
    return PlanResponse(
        id=definition.tier.value,
        name=definition.name,
        audience=definition.audience.value,
        rank=definition.rank,
        purchasable=definition.purchasable,
        limits={kind.value: serialize_limit(definition.limit_for(kind)) for kind in ResourceKind},
        features=[f.value for f in definition.enabled_features()],
    )


@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    owner: OwnerContext = Depends(get_owner_context),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Current plan, available features and capacity for the caller's organisation."""
    try:
        summary = service.get_status(owner.owner_id)
    except EntitlementEvaluationError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=e.to_dict(),
        )
    return SubscriptionStatusResponse(**summary.to_dict())


@router.get("/features/{feature}", response_model=FeatureAccessResponse)
async def check_feature_access(
    feature: str,
    request: Request,
    owner: OwnerContext = Depends(get_owner_context),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """
    Check one feature without enforcing it.

    Denial is a normal 200 response: the UI uses it to render an upgrade prompt.
    """
    try:
        result = service.check_feature(
            owner.owner_id,
            feature,
            user_id=owner.user_id,
            endpoint=request.url.path,
            method=request.method,
        )
    except UnknownFeatureError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown feature: {feature}",
        )
    return FeatureAccessResponse(**result.to_dict())


@router.post("/features/{feature}/usage", response_model=FeatureUsageResponse)
async def record_feature_usage(
    feature: str,
    request: Request,
    body: Optional[FeatureUsageRequest] = None,
    owner: OwnerContext = Depends(get_owner_context),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Record use of a feature the caller is entitled to."""
    try:
        result = service.check_feature(
            owner.owner_id,
            feature,
            user_id=owner.user_id,
            endpoint=request.url.path,
            method=request.method,
        )
    except UnknownFeatureError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown feature: {feature}",
        )
    if not result.granted:
        raise denial_exception(result)

    recorded = service.record_feature_usage(
        owner.owner_id,
        result.feature,
        user_id=owner.user_id,
        metadata=body.metadata if body else None,
    )
    return FeatureUsageResponse(feature=result.feature.value, recorded=recorded)


@router.get("/capacity", response_model=List[CapacityResponse])
async def get_capacity(
    request: Request,
    owner: OwnerContext = Depends(get_owner_context),
    service: EntitlementService = Depends(get_entitlement_service),
):
    return [
        CapacityResponse(**service.check_capacity(
            owner.owner_id, kind, user_id=owner.user_id, endpoint=request.url.path
        ).to_dict())
        for kind in ResourceKind
    ]


@router.get("/capacity/{resource}", response_model=CapacityResponse)
async def get_resource_capacity(
    resource: str,
    request: Request,
    owner: OwnerContext = Depends(get_owner_context),
    service: EntitlementService = Depends(get_entitlement_service),
):
    kind = _resource_kind(resource)
    result = service.check_capacity(
        owner.owner_id, kind, user_id=owner.user_id, endpoint=request.url.path
    )
    return CapacityResponse(**result.to_dict())


@router.post("/capacity/{resource}/reserve", response_model=CapacityResponse)
async def reserve_capacity(
    resource: str,
    amount: int = Query(1, ge=1, le=10000),
    owner: OwnerContext = Depends(get_owner_context),
    service: CapacityService = Depends(get_capacity_service),
):
    """
    Atomically take ``amount`` of a resource for a new user, student or school.

    Returns 402 with the usage when the cap would be exceeded, and 503 with
    the same payload when the store could not be read.
    """
    kind = _resource_kind(resource)
    result = service.try_increment(owner.owner_id, kind, amount)
    if result.reason == DenialReason.SUBSCRIPTION_UNAVAILABLE:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "subscription_unavailable", **result.to_dict()},
        )
    if not result.within_limit:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"error": "capacity_exceeded", **result.to_dict()},
        )
    return CapacityResponse(**result.to_dict())


@router.post("/capacity/{resource}/release", response_model=CapacityResponse)
async def release_capacity(
    resource: str,
    amount: int = Query(1, ge=1, le=10000),
    owner: OwnerContext = Depends(get_owner_context),
    capacity: CapacityService = Depends(get_capacity_service),
    service: EntitlementService = Depends(get_entitlement_service),
):
    kind = _resource_kind(resource)
    capacity.release(owner.owner_id, kind, amount)
    return CapacityResponse(**service.check_capacity(owner.owner_id, kind).to_dict())


@router.get("/history/export", response_model=List[SubscriptionResponse])
async def export_subscription_history(
    owner: OwnerContext = Depends(require_feature(Feature.DATA_EXPORT)),
    db: Session = Depends(get_db_session),
):
    """Every subscription the organisation has held, newest first."""
    history = SubscriptionRepository(db).history(owner.owner_id)
    return [SubscriptionResponse(**s.to_dict()) for s in history]


@router.get("/plans", response_model=PlansListResponse)
async def list_plans(
    include_unpurchasable: bool = Query(False),
    catalogue: Catalogue = Depends(get_catalogue),
):
    """Tier catalogue ordered by rank."""
    plans = [
        _plan_response(t) for t in catalogue.tiers
        if t.purchasable or include_unpurchasable
    ]
    return PlansListResponse(version=catalogue.version, plans=plans)


@router.get("/plans/compare", response_model=PlanComparisonResponse)
async def compare_plans(
    from_tier: str = Query(...),
    to_tier: str = Query(...),
    resolver: EntitlementResolver = Depends(get_resolver),
):
    """What moving between two tiers gains and loses."""
    try:
        comparison = resolver.compare_tiers(to_tier, from_tier)
        change = resolver.classify_plan_change(from_tier, to_tier)
        gained = resolver.features_gained(from_tier, to_tier)
        lost = resolver.features_lost(from_tier, to_tier)
    except UnknownTierError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown tier: {e.tier}",
        )

    catalogue = resolver.catalogue
    source = catalogue.get_tier(from_tier)
    target = catalogue.get_tier(to_tier)
    return PlanComparisonResponse(
        from_tier=source.tier.value,
        to_tier=target.tier.value,
        change=change.value,
        comparison=comparison,
        features_gained=[f.value for f in gained],
        features_lost=[f.value for f in lost],
        limits={
            kind.value: {
                "from": serialize_limit(source.limit_for(kind)),
                "to": serialize_limit(target.limit_for(kind)),
            }
            for kind in ResourceKind
        },
    )
