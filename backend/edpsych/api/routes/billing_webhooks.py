"""
Billing provider webhook handler.

Receives subscription lifecycle events from the billing provider and
applies them through SubscriptionService.

SECURITY: every request is verified with an HMAC-SHA256 signature of the
raw body (base64) in the X-Billing-Signature header. The owner_id in a
verified payload is trusted; it is never read from unsigned requests.
"""

import base64
import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from edpsych.api.schemas.subscription import BillingWebhookEvent, WebhookResponse
from edpsych.database.session import get_db_session
from edpsych.entitlements.dependencies import get_resolver
from edpsych.entitlements.errors import (
    InvalidStatusTransitionError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
    UnknownTierError,
)
from edpsych.entitlements.models import BillingCycle, Subscription
from edpsych.entitlements.resolver import EntitlementResolver
from edpsych.models.billing_event import ActorType
from edpsych.services.subscription_service import DEFAULT_TRIAL_DAYS, SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing-webhooks"])

SIGNATURE_HEADER = "X-Billing-Signature"


def compute_signature(data: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_webhook_signature(data: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify the billing provider's HMAC signature.

    Args:
        data: Raw request body bytes
        signature: X-Billing-Signature header value
        secret: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not secret:
        return False
    # Constant-time comparison to prevent timing attacks
    return hmac.compare_digest(compute_signature(data, secret), signature)


async def get_verified_event(request: Request) -> BillingWebhookEvent:
    """
    Read, verify and parse the webhook body.

    Raises:
        HTTPException: 503 if no secret is configured, 401 on a bad
        signature, 400 on a malformed body.
    """
    settings = getattr(request.app.state, "settings", None)
    secret = settings.webhook_secret if settings else None
    if not secret:
        logger.error("BILLING_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification not configured",
        )

    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        logger.warning("Missing signature header in billing webhook")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing webhook signature",
        )

    body = await request.body()
    if not verify_webhook_signature(body, signature, secret):
        logger.warning("Invalid billing webhook signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    try:
        return BillingWebhookEvent.model_validate(json.loads(body))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error("Invalid billing webhook body", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook body",
        )


def _require_tier(event: BillingWebhookEvent) -> str:
    if not event.tier:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{event.event_type} requires a tier",
        )
    return event.tier


def _apply_event(service: SubscriptionService, event: BillingWebhookEvent) -> Subscription:
    """Dispatch one provider event to the lifecycle service."""
    kind = event.event_type

    if kind == "trial.started":
        return service.start_trial(
            tier=event.tier or "trial",
            trial_days=event.trial_days or DEFAULT_TRIAL_DAYS,
            billing_cycle=event.billing_cycle or BillingCycle.MONTHLY,
            start_date=event.start_date,
        )
    if kind == "trial.expired":
        return service.expire_trial(expired_on=event.end_date)
    if kind == "subscription.activated":
        return service.activate(
            tier=_require_tier(event),
            billing_cycle=event.billing_cycle or BillingCycle.ANNUALLY,
            quantity=event.quantity,
            amount=event.amount,
            end_date=event.end_date,
            start_date=event.start_date,
        )
    if kind == "subscription.renewed":
        if event.end_date is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="subscription.renewed requires end_date",
            )
        return service.renew(end_date=event.end_date, amount=event.amount)
    if kind == "subscription.plan_changed":
        return service.change_plan(
            new_tier=_require_tier(event),
            billing_cycle=event.billing_cycle,
            quantity=event.quantity,
            amount=event.amount,
            effective_date=event.start_date,
        )
    if kind == "subscription.cancelled":
        return service.cancel(reason=event.reason, cancelled_on=event.end_date)
    if kind == "subscription.reactivated":
        return service.reactivate(
            tier=event.tier,
            billing_cycle=event.billing_cycle,
            quantity=event.quantity,
            amount=event.amount,
            end_date=event.end_date,
        )
    if kind == "payment.failed":
        return service.record_payment_failure(reason=event.reason or "payment_failed")
    if kind == "payment.recovered":
        return service.recover_payment(amount=event.amount)
    # subscription.unpaid
    return service.mark_unpaid()


@router.post("/webhooks", response_model=WebhookResponse)
async def handle_billing_webhook(
    event: BillingWebhookEvent = Depends(get_verified_event),
    db: Session = Depends(get_db_session),
    resolver: EntitlementResolver = Depends(get_resolver),
    x_billing_event_id: Optional[str] = Header(None, alias="X-Billing-Event-Id"),
):
    """
    Apply a signed subscription lifecycle event.

    Lifecycle violations are reported to the provider as 404 (no
    subscription to act on) or 409 (conflicting state), never applied.
    """
    logger.info("Billing webhook received", extra={
        "event_type": event.event_type,
        "owner_id": event.owner_id,
        "event_id": x_billing_event_id,
    })

    service = SubscriptionService(
        db,
        event.owner_id,
        resolver,
        actor_type=ActorType.WEBHOOK,
        actor_id=x_billing_event_id,
    )

    try:
        subscription = _apply_event(service, event)
    except SubscriptionNotFoundError as e:
        logger.warning("Billing webhook for owner without subscription", extra={
            "event_type": event.event_type,
            "owner_id": event.owner_id,
        })
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (SubscriptionConflictError, InvalidStatusTransitionError) as e:
        logger.warning("Billing webhook rejected by lifecycle rules", extra={
            "event_type": event.event_type,
            "owner_id": event.owner_id,
            "error": str(e),
        })
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except UnknownTierError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return WebhookResponse(
        message=f"{event.event_type} applied",
        subscription_id=subscription.id,
        status=subscription.status.value,
    )
