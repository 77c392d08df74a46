"""
api/routes/v1/oauth.py -- OAuth authorization-code flow for GitHub and Google.

Routes:
  GET /api/v1/oauth/{provider}?tenant=<domain>   -- redirect to the provider
  GET /api/v1/oauth/{provider}/callback          -- exchange code, log in, return tokens

The tenant domain is chosen before the redirect and carried to the callback
in the Starlette session, next to the OAuth state authlib keeps there.

Flow at the callback:
  1. Exchange the authorization code (authlib verifies state -- CSRF).
  2. Extract a verified email and display name [H1].
  3. Hand (email, name, provider, tenant) to AuthService.oauth_login(), which
     provisions the user on first login.
"""

from __future__ import annotations

import logging
import re

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.models import DOMAIN_PATTERN, AuthResponse
from auth.errors import Unauthorized
from auth.oauth import get_oauth_identity

logger = logging.getLogger("tenantauth.api.oauth")

router = APIRouter()

_SESSION_TENANT_KEY = "oauth_tenant_domain"


def _require_enabled(request: Request, provider: str) -> None:
    """Reject provider names that are not configured.

    Prevents a crafted provider name from reaching authlib's registry.
    """
    enabled = {p["name"] for p in request.app.state.oauth_providers}
    if provider not in enabled:
        raise HTTPException(
            status_code=404,
            detail={"code": "unknown_provider", "message": f"OAuth provider {provider!r} is not enabled."},
        )


@router.get("/oauth/{provider}")
async def oauth_redirect(
    request: Request,
    provider: str,
    tenant: str = Query(min_length=1, max_length=100),
) -> RedirectResponse:
    """Redirect the browser to the provider's authorization page."""
    _require_enabled(request, provider)
    tenant_domain = tenant.strip().lower()
    if not _is_domain(tenant_domain):
        raise HTTPException(
            status_code=422,
            detail={"code": "validation_error", "message": "Invalid tenant domain."},
        )
    request.session[_SESSION_TENANT_KEY] = tenant_domain
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> JSONResponse:
    """Complete the flow and return an access/refresh token pair."""
    _require_enabled(request, provider)
    tenant_domain = request.session.pop(_SESSION_TENANT_KEY, None)
    if not tenant_domain:
        raise Unauthorized("OAuth session expired. Start the login again.")

    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        raise Unauthorized("OAuth login failed.")

    try:
        email, name = await get_oauth_identity(client, provider, token)
    except ValueError:
        logger.warning("OAuth login rejected: unverified or missing email from %r", provider)
        raise Unauthorized("OAuth login failed.")

    result = await run_in_threadpool(
        request.app.state.auth_service.oauth_login,
        email,
        name,
        provider,
        tenant_domain,
        request.client.host if request.client else "unknown",
    )
    resp = JSONResponse(content=AuthResponse.from_result(result).model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _is_domain(value: str) -> bool:
    return re.fullmatch(DOMAIN_PATTERN, value) is not None
