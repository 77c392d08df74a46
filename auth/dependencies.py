"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer-token auth.

Access tokens arrive as `Authorization: Bearer <jwt>`. Validation is purely
local (signature, issuer, audience, expiry); no store round-trip is made, so
claims stay valid until the token expires even if roles change in between.

try_get_claims() is the soft variant (returns None on failure).
get_current_claims() wraps it and raises HTTP 401 if unauthenticated.
require_permission(name) builds a dependency that also raises HTTP 403
when the token does not carry that permission.

Layer rule: no imports from api/ or cache/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.models import AccessClaims
from auth.tokens import TokenService


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_claims(request: Request) -> AccessClaims | None:
    """Validate the bearer token. Returns claims on success, None on any failure."""
    token = bearer_token(request)
    if not token:
        return None
    tokens: TokenService = request.app.state.tokens
    return tokens.validate_access_token(token)


def get_current_claims(request: Request) -> AccessClaims:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: AccessClaims = Depends(get_current_claims)): ...
    """
    claims = try_get_claims(request)
    if claims is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return claims


def require_permission(permission: str) -> Callable[..., AccessClaims]:
    """Build a dependency that requires `permission` in the token's claims.

    Use as a FastAPI dependency:
        @router.patch("/users/{user_id}")
        async def route(claims: AccessClaims = Depends(require_permission("users.update"))): ...
    """

    def dependency(claims: AccessClaims = Depends(get_current_claims)) -> AccessClaims:
        if not claims.has_permission(permission):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Permission {permission!r} required."},
            )
        return claims

    return dependency
