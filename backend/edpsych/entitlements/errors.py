"""
Structured error classes for entitlement enforcement.

Access denial is a normal return value of the resolver and is never raised
from it. These exceptions cover configuration faults, lifecycle violations
and the HTTP 402 surface.
"""

from typing import Any, Dict, Optional

from fastapi import status


class EntitlementError(Exception):
    """Base exception for entitlement errors."""
    pass


class CatalogueConfigError(EntitlementError):
    """
    Raised when the tier/feature catalogue is missing or inconsistent.

    Fatal at startup: the process must refuse to serve requests with a
    catalogue that does not cover every tier and feature.
    """

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        if path:
            message = f"{message} (catalogue: {path})"
        super().__init__(message)


class UnknownFeatureError(EntitlementError, ValueError):
    """Raised when a feature identifier is not part of the catalogue."""

    def __init__(self, feature: Any):
        self.feature = feature
        super().__init__(f"Unknown feature: {feature!r}")


class UnknownTierError(EntitlementError, ValueError):
    """Raised when a tier identifier is not part of the catalogue."""

    def __init__(self, tier: Any):
        self.tier = tier
        super().__init__(f"Unknown tier: {tier!r}")


class InvalidStatusTransitionError(EntitlementError):
    """Raised when a subscription status change breaks the lifecycle rules."""

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid subscription status transition: {from_status} -> {to_status}"
        )


class SubscriptionConflictError(EntitlementError):
    """Raised when an owner already holds a current subscription."""

    def __init__(self, owner_id: str, existing_id: Optional[str] = None):
        self.owner_id = owner_id
        self.existing_id = existing_id
        super().__init__(
            f"Owner {owner_id} already has a current subscription"
            + (f" ({existing_id})" if existing_id else "")
        )


class SubscriptionNotFoundError(EntitlementError):
    """Raised when a lifecycle operation needs a subscription that does not exist."""

    def __init__(self, owner_id: str, detail: str = "no current subscription"):
        self.owner_id = owner_id
        self.detail = detail
        super().__init__(f"Subscription not found for owner {owner_id}: {detail}")


class EntitlementDeniedError(EntitlementError):
    """
    Raised by route guards when a feature or capacity check is denied.

    Wraps the resolver's result so the HTTP layer can return it as the
    402 body an upgrade prompt consumes.
    """

    def __init__(
        self,
        feature: str,
        reason: str,
        current_tier: Optional[str] = None,
        required_tier: Optional[str] = None,
        action: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        http_status: int = status.HTTP_402_PAYMENT_REQUIRED,
    ):
        self.feature = feature
        self.reason = reason
        self.current_tier = current_tier
        self.required_tier = required_tier
        self.action = action
        self.detail = detail or {}
        self.http_status = http_status
        super().__init__(f"Feature '{feature}' denied: {reason}")

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": "entitlement_denied",
            "feature": self.feature,
            "reason": self.reason,
            "current_tier": self.current_tier,
            "required_tier": self.required_tier,
            "action": self.action,
            **self.detail,
        }
