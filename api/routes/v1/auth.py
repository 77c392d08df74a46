"""
api/routes/v1/auth.py -- Authentication, session and user administration endpoints.

Routes:
  POST  /api/v1/auth/register                  -- create account (tenant on first use)
  POST  /api/v1/auth/login                     -- password login
  POST  /api/v1/auth/refresh                   -- rotate a refresh token
  POST  /api/v1/auth/logout                    -- revoke a refresh token (requires auth)
  POST  /api/v1/auth/password-reset/request    -- issue reset token, mail it (uniform 200)
  POST  /api/v1/auth/password-reset/confirm    -- set new password with a reset token
  POST  /api/v1/auth/oauth/login               -- trusted upstream OAuth identity hand-off
  GET   /api/v1/auth/providers                 -- list enabled OAuth providers (public)
  GET   /api/v1/auth/me                        -- identity from the access token
  GET   /api/v1/auth/session                   -- cached roles/permissions
  POST  /api/v1/auth/users/{id}/roles          -- assign role (roles.manage)
  PATCH /api/v1/auth/users/{id}                -- activate/deactivate (users.update)

Security:
  [H2] Credential routes are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] AuthService.login() provides timing equalization -- never inline
       a lookup + verify here.
  [M4] PATCH /users/{id} blocks self-deactivation.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Anti-enumeration: password-reset/request answers identically whether or
       not the account exists. The mail goes out in a background task so
       SMTP latency does not leak it either.
  IDOR guard: logout revokes only tokens owned by the caller; admin routes
       only touch users of the caller's own tenant.

Domain errors (AuthError subclasses) propagate to the handler in api/main.py,
which renders the uniform error envelope.
"""

from __future__ import annotations

import hmac

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import credential_limit, limiter
from api.models import (
    AuthResponse,
    LoginRequest,
    MeResponse,
    MessageResponse,
    OAuthLoginRequest,
    OAuthProviderInfo,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    RoleAssign,
    SessionResponse,
    UserPatch,
    UserResponse,
)
from auth.dependencies import get_current_claims, require_permission
from auth.mailer import MailSender
from auth.models import AccessClaims, AuthResult, Tenant, User
from auth.service import AuthService

# Auth policy:
# - POST  register, login, refresh, password-reset/*:  public
# - POST  oauth/login:        shared secret (X-Handoff-Secret); disabled when unset
# - GET   providers:          public
# - POST  logout:             requires auth (get_current_claims)
# - GET   me, session:        requires auth (get_current_claims)
# - POST  users/{id}/roles:   requires roles.manage
# - PATCH users/{id}:         requires users.update
router = APIRouter()

RESET_REQUEST_MESSAGE = "If an account with that email exists, a password reset link has been sent."


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _token_response(result: AuthResult, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=AuthResponse.from_result(result).model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(credential_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and log it in. 409 if the email exists in this tenant."""
    result = _service(request).register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        tenant_domain=body.tenant_domain,
        ip=_client_ip(request),
    )
    return _token_response(result, status_code=201)


@limiter.limit(credential_limit)  # [H2]
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Wrong password, unknown email and inactive account all produce the same
    401 body.
    """
    result = _service(request).login(
        email=body.email,
        password=body.password,
        tenant_domain=body.tenant_domain or None,
        ip=_client_ip(request),
    )
    return _token_response(result)


@router.post("/auth/refresh", response_model=AuthResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new access/refresh pair. The old one stops working."""
    result = _service(request).refresh_token(body.refresh_token, ip=_client_ip(request))
    return _token_response(result)


@limiter.limit(credential_limit)  # [H2]
@router.post("/auth/password-reset/request", response_model=MessageResponse)
def request_password_reset(
    request: Request,
    body: PasswordResetRequest,
    background_tasks: BackgroundTasks,
) -> MessageResponse:
    """Start a password reset. The response never reveals whether the account exists."""
    mailer: MailSender = request.app.state.mailer

    def notify(user: User, tenant: Tenant, raw_token: str) -> None:
        background_tasks.add_task(mailer.send_password_reset, user.email, raw_token, tenant.domain)

    _service(request).request_password_reset(body.email, body.tenant_domain or None, notify=notify)
    return MessageResponse(message=RESET_REQUEST_MESSAGE)


@limiter.limit(credential_limit)  # [H2]
@router.post("/auth/password-reset/confirm", response_model=MessageResponse)
def confirm_password_reset(request: Request, body: PasswordResetConfirm) -> MessageResponse:
    """Set a new password. 400 for an unknown, used or expired token."""
    if not _service(request).confirm_password_reset(body.token, body.new_password, ip=_client_ip(request)):
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_token", "message": "Invalid or expired reset token."},
        )
    return MessageResponse(message="Password has been reset.")


@router.post("/auth/oauth/login", response_model=AuthResponse)
def oauth_login(request: Request, body: OAuthLoginRequest) -> JSONResponse:
    """Log in with an identity an upstream component has already verified.

    The caller proves it is trusted with X-Handoff-Secret. When no secret is
    configured the route does not exist as far as clients can tell.
    """
    expected = request.app.state.settings.oauth_handoff_secret
    if not expected:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Not found."})
    supplied = request.headers.get("X-Handoff-Secret", "")
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail={"code": "unauthorized", "message": "Invalid credentials."})

    result = _service(request).oauth_login(
        email=body.email,
        name=body.name,
        provider=body.provider,
        tenant_domain=body.tenant_domain,
        ip=_client_ip(request),
    )
    return _token_response(result)


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when no provider env vars are set."""
    return [OAuthProviderInfo(**p) for p in request.app.state.oauth_providers]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: RefreshRequest,
    claims: AccessClaims = Depends(get_current_claims),
) -> MessageResponse:
    """Revoke one of the caller's refresh tokens. 404 if unknown, inactive or not theirs."""
    _service(request).revoke_token(body.refresh_token, ip=_client_ip(request), user_id=claims.subject)
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=MeResponse)
async def me(claims: AccessClaims = Depends(get_current_claims)) -> MeResponse:
    """Return identity information carried by the access token."""
    return MeResponse(
        user_id=claims.subject,
        email=claims.email,
        name=claims.name,
        tenant_id=claims.tenant_id,
        tenant_domain=claims.tenant_domain,
        roles=list(claims.roles),
        permissions=list(claims.permissions),
    )


@router.get("/auth/session", response_model=SessionResponse)
def session(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> SessionResponse:
    """Current roles/permissions from the session cache, recomputed on a miss.

    Unlike /me this reflects role changes made after the token was issued.
    """
    entry = _service(request).get_session(claims.subject)
    if entry is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    return SessionResponse(user_id=entry.user_id, roles=entry.roles, permissions=entry.permissions)


# ---------------------------------------------------------------------------
# User administration (permission-gated, tenant-scoped)
# ---------------------------------------------------------------------------


@router.post("/auth/users/{user_id}/roles", response_model=MessageResponse)
def assign_role(
    request: Request,
    user_id: str,
    body: RoleAssign,
    claims: AccessClaims = Depends(require_permission("roles.manage")),
) -> MessageResponse:
    """Grant a role to a user in the caller's tenant."""
    added = _service(request).assign_role(user_id, body.role, tenant_id=claims.tenant_id)
    return MessageResponse(message="Role assigned." if added else "Role already assigned.")


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: str,
    body: UserPatch,
    claims: AccessClaims = Depends(require_permission("users.update")),
) -> UserResponse:
    """Activate or deactivate a user in the caller's tenant.

    Deactivation revokes the user's refresh tokens. Access tokens already
    issued stay valid until they expire.
    """
    if body.is_active is None:
        raise HTTPException(status_code=400, detail={"code": "no_changes", "message": "No fields to update."})
    # [M4] Block self-deactivation
    if not body.is_active and user_id == claims.subject:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )
    user = _service(request).set_user_active(user_id, body.is_active, ip=_client_ip(request), tenant_id=claims.tenant_id)
    return _user_to_response(user)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _user_to_response(user: User | None) -> UserResponse:
    if user is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    return UserResponse(
        id=user.id,
        email=user.email,
        tenant_id=user.tenant_id,
        first_name=user.first_name,
        last_name=user.last_name,
        auth_provider=user.auth_provider,
        is_active=user.is_active,
        email_confirmed=user.email_confirmed,
    )
