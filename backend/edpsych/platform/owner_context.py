"""
Owner context for owner-scoped entitlement checks.

CRITICAL SECURITY REQUIREMENTS:
- owner_id is ALWAYS taken from the verified bearer JWT (org_id, falling
  back to sub), NEVER from the request body or query string
- Requests without a valid token are rejected with 401
- Tokens without an owner identifier are rejected with 403
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import InvalidTokenError

logger = logging.getLogger(__name__)

# Security scheme for extracting Bearer token
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class OwnerContext:
    """Identity of the organisation or individual a request acts for."""

    owner_id: str
    user_id: Optional[str] = None
    roles: tuple = ()

    def __post_init__(self):
        if not self.owner_id:
            raise ValueError("owner_id cannot be empty")


class OwnerTokenVerifier:
    """Verifies HS-signed bearer tokens and builds an OwnerContext."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        if not secret:
            raise ValueError("secret is required")
        self._secret = secret
        self._algorithm = algorithm

    def decode(self, token: str) -> Dict[str, Any]:
        return jwt.decode(
            token,
            self._secret,
            algorithms=[self._algorithm],
            options={"verify_aud": False, "verify_exp": True},
        )

    def context_from_claims(self, payload: Dict[str, Any]) -> Optional[OwnerContext]:
        user_id = payload.get("sub")
        owner_id = payload.get("org_id") or user_id
        if not owner_id:
            return None
        roles = payload.get("roles") or ()
        if isinstance(roles, str):
            roles = (roles,)
        return OwnerContext(
            owner_id=str(owner_id),
            user_id=str(user_id) if user_id else None,
            roles=tuple(roles),
        )


def get_owner_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> OwnerContext:
    """
    FastAPI dependency resolving the owner for this request.

    The context is cached on request.state so several dependencies in one
    request share a single verification.
    """
    cached = getattr(request.state, "owner_context", None)
    if cached is not None:
        return cached

    verifier: Optional[OwnerTokenVerifier] = getattr(request.app.state, "token_verifier", None)
    if verifier is None:
        logger.warning(
            "Authentication not configured - protected endpoint accessed",
            extra={"path": request.url.path, "method": request.method},
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service not configured",
        )

    if credentials is None or not credentials.credentials:
        logger.warning("Request missing authorization token", extra={
            "path": request.url.path,
            "method": request.method,
        })
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = verifier.decode(credentials.credentials)
    except InvalidTokenError as e:
        logger.warning("Invalid authorization token", extra={
            "path": request.url.path,
            "error": str(e),
        })
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    context = verifier.context_from_claims(payload)
    if context is None:
        logger.error("JWT missing owner identifier", extra={
            "payload_keys": list(payload.keys()),
        })
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token missing organisation identifier",
        )

    request.state.owner_context = context
    return context
