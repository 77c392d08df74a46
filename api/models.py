"""
API request and response models for TenantAuth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import AuthResult

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Lowercase DNS-style name: labels of [a-z0-9-], dot separated. Checked after
# the validator below has stripped and lowercased the value.
DOMAIN_PATTERN = r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*$"

MAX_PASSWORD_LENGTH = 1024


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    The tenant is created on first use of tenant_domain.
    """

    email: EmailStr
    password: str = Field(max_length=MAX_PASSWORD_LENGTH)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    tenant_domain: str = Field(min_length=1, max_length=100, pattern=DOMAIN_PATTERN)

    @field_validator("tenant_domain", mode="before")
    @classmethod
    def normalize_domain(cls, value):
        """Strip and lowercase before the pattern check runs."""
        return value.strip().lower() if isinstance(value, str) else value


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    tenant_domain is optional. Without it the email must be unique across
    tenants, otherwise the login fails like a wrong password would.
    """

    email: EmailStr
    password: str = Field(max_length=MAX_PASSWORD_LENGTH)
    tenant_domain: Optional[str] = Field(default=None, max_length=100)

    @field_validator("tenant_domain", mode="before")
    @classmethod
    def normalize_domain(cls, value):
        """Strip and lowercase before the pattern check runs."""
        return value.strip().lower() if isinstance(value, str) else value


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh and POST /auth/logout."""

    refresh_token: str = Field(min_length=1, max_length=512)


class PasswordResetRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    tenant_domain: Optional[str] = Field(default=None, max_length=100)

    @field_validator("tenant_domain", mode="before")
    @classmethod
    def normalize_domain(cls, value):
        """Strip and lowercase before the pattern check runs."""
        return value.strip().lower() if isinstance(value, str) else value


class PasswordResetConfirm(BaseModel):
    token: str = Field(min_length=1, max_length=512)
    new_password: str = Field(max_length=MAX_PASSWORD_LENGTH)


class OAuthLoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/oauth/login.

    The identity must already be verified by the provider. This route is for
    trusted upstream callers; it never checks a password.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    name: str = Field(default="", max_length=200)
    provider: str = Field(min_length=1, max_length=50)
    tenant_domain: str = Field(min_length=1, max_length=100, pattern=DOMAIN_PATTERN)

    @field_validator("tenant_domain", mode="before")
    @classmethod
    def normalize_domain(cls, value):
        """Strip and lowercase before the pattern check runs."""
        return value.strip().lower() if isinstance(value, str) else value


class RoleAssign(BaseModel):
    """Request body for POST /api/v1/auth/users/{user_id}/roles."""

    model_config = ConfigDict(str_strip_whitespace=True)

    role: str = Field(min_length=1, max_length=100)


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{user_id}."""

    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserInfoResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    first_name: str
    last_name: str
    tenant_domain: str
    roles: list[str]
    permissions: list[str]


class AuthResponse(BaseModel):
    """Response for register, login, refresh and OAuth login.

    expires_at is the refresh token's expiry (ISO 8601 UTC); the access
    token's own expiry is inside the JWT.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: str
    user: UserInfoResponse

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthResponse":
        """Factory Method -- the mapping lives beside the output model."""
        return cls(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_at=result.expires_at,
            user=UserInfoResponse(
                id=result.user.id,
                email=result.user.email,
                first_name=result.user.first_name,
                last_name=result.user.last_name,
                tenant_domain=result.user.tenant_domain,
                roles=list(result.user.roles),
                permissions=list(result.user.permissions),
            ),
        )


class MeResponse(BaseModel):
    """Identity as asserted by the access token's claims."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    name: str
    tenant_id: str
    tenant_domain: str
    roles: list[str]
    permissions: list[str]


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    roles: list[str]
    permissions: list[str]


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    tenant_id: str
    first_name: str
    last_name: str
    auth_provider: Optional[str]
    is_active: bool
    email_confirmed: bool


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
