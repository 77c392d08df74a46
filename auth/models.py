"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; the store, token service and orchestrator do the work.

Timestamps are ISO 8601 UTC strings, as written by auth/store.py.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Tenant:
    """An isolated customer namespace identified by its domain.

    domain is stored lowercased; uniqueness is enforced by the store.
    """

    domain: str
    name: str
    id: str | None = None
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class User:
    """A user account owned by exactly one tenant.

    password_hash is None for externally authenticated users (OAuth-only).
    auth_provider names the provider that provisioned such a user ("google",
    "github"); it is None for locally registered users. verify_password()
    never accepts a None hash, so an OAuth-only account cannot be entered
    with a blank password.

    password_reset_token holds the HMAC digest of the raw reset token, never
    the raw value.
    """

    tenant_id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    id: str | None = None
    password_hash: str | None = None  # None = externally authenticated
    auth_provider: str | None = None  # "google", "github"
    is_active: bool = True
    email_confirmed: bool = False
    password_reset_token: str | None = None
    password_reset_token_expiry: str | None = None
    last_login_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Role:
    name: str
    description: str = ""
    id: str | None = None


@dataclass
class Permission:
    """A (resource, action) capability. name is the flat "resource.action" string."""

    name: str
    resource: str
    action: str
    description: str = ""
    id: str | None = None


@dataclass
class RefreshToken:
    """A persisted refresh token row.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token). The raw value is handed
    to the client once and never stored.

    Active means not revoked and not expired. Once revoked a row never becomes
    active again.
    """

    user_id: str
    token_hash: str
    expires_at: str
    created_by_ip: str
    id: str | None = None
    is_revoked: bool = False
    created_at: str | None = None
    revoked_at: str | None = None
    revoked_by_ip: str | None = None

    def is_active(self, now_iso: str) -> bool:
        return not self.is_revoked and self.expires_at > now_iso


@dataclass(frozen=True)
class AccessClaims:
    """Decoded, verified access-token claims.

    Typed so permission checks read claims.has_permission("users.read")
    instead of poking at a string-keyed payload.
    """

    subject: str
    email: str
    name: str
    tenant_id: str
    tenant_domain: str
    roles: tuple[str, ...]
    permissions: tuple[str, ...]
    issuer: str
    audience: str
    expires_at: int  # unix seconds
    token_id: str = ""

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


@dataclass
class UserInfo:
    id: str
    email: str
    first_name: str
    last_name: str
    tenant_domain: str
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)


@dataclass
class AuthResult:
    """What a successful register/login/refresh/OAuth login hands back.

    expires_at is the refresh token's expiry (ISO 8601 UTC).
    """

    access_token: str
    refresh_token: str
    expires_at: str
    user: UserInfo
