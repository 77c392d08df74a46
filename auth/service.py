"""
auth/service.py -- Authentication use cases: register, login, refresh,
logout, OAuth login, password reset, and session lookup.

Each use case runs in exactly one store transaction. Tenant creation, user
insert, role link, last-login stamp, refresh-token revoke and the new
refresh-token row commit together or not at all.

Every successful authentication (register, login, refresh, OAuth login)
issues one access token and persists one new refresh-token row. The session
cache is written after commit and is best effort: SessionCache swallows its
own failures, so a Redis outage never fails an authentication.

Security:
  [C1] login() always runs bcrypt, against DUMMY_HASH when the email is
       unknown or the account has no local password, so response time does
       not reveal which accounts exist.
  Unauthorized carries the same generic message for unknown email, wrong
       password and inactive account.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.engine import Connection

from auth.errors import NotFound, Unauthorized, ValidationConflict
from auth.models import AuthResult, Tenant, User, UserInfo
from auth.passwords import DUMMY_HASH, hash_password, verify_password
from auth.permissions import PermissionAggregator
from auth.reset import PasswordResetFlow, ResetNotifier, find_user
from auth.store import USER_ROLE, AuthStore, now_iso
from auth.tenants import TenantResolver
from auth.tokens import TokenService
from cache.session import SessionCache, SessionEntry
from core.config import Settings

logger = logging.getLogger("tenantauth.auth.service")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def split_name(name: str) -> tuple[str, str]:
    """Split a provider display name into (first, last). "Ada" -> ("Ada", "")."""
    parts = name.strip().split(None, 1)
    if not parts:
        return "", ""
    return parts[0], parts[1] if len(parts) > 1 else ""


class AuthService:
    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        settings: Settings,
        session_cache: Optional[SessionCache] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.session_cache = session_cache
        self.tenants = TenantResolver(store)
        self.permissions = PermissionAggregator(store)
        self.resets = PasswordResetFlow(store, tokens, settings, session_cache)
        self._session_ttl = settings.session_cache_ttl_seconds

    # ------------------------------------------------------------------
    # Use cases
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        tenant_domain: str,
        ip: str,
    ) -> AuthResult:
        """Create a local account, creating the tenant on first use.

        Email uniqueness is per tenant. Raises ValidationConflict when the
        (email, tenant) pair already exists -- from the pre-check, or from the
        unique constraint when a concurrent registration won the race.
        Raises Unauthorized when the tenant exists but has been deactivated.
        """
        email = normalize_email(email)
        password_hash = hash_password(password)
        with self.store.transaction() as conn:
            tenant = self.tenants.resolve_or_create(tenant_domain, tenant_domain, conn=conn)
            if not tenant.is_active:
                raise Unauthorized()
            if self.store.find_users_by_email(email, tenant_domain=tenant.domain, conn=conn):
                raise ValidationConflict("A user with this email already exists in this tenant.")
            user = User(
                tenant_id=tenant.id,
                email=email,
                password_hash=password_hash,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                is_active=True,
                email_confirmed=False,
            )
            user.id = self.store.create_user(user, conn=conn)
            self._assign_default_role(user.id, conn)
            result = self._issue(user, tenant, ip, conn)
        logger.info("User registered: %s in tenant %s", user.id, tenant.domain)
        self._cache(result)
        return result

    def login(self, email: str, password: str, tenant_domain: Optional[str], ip: str) -> AuthResult:
        """Password login. Scoped to tenant_domain when given, by email alone otherwise."""
        email = normalize_email(email)
        with self.store.transaction() as conn:
            user = find_user(self.store, email, tenant_domain, conn=conn)
            if user is None or user.password_hash is None:
                verify_password(password, DUMMY_HASH)  # [C1]
                raise Unauthorized()
            if not verify_password(password, user.password_hash):
                raise Unauthorized()
            if not user.is_active:
                raise Unauthorized()
            tenant = self._active_tenant(user, conn)
            self.store.update_user(user.id, conn=conn, last_login_at=now_iso())
            result = self._issue(user, tenant, ip, conn)
        logger.info("Login succeeded for user %s", user.id)
        self._cache(result)
        return result

    def refresh_token(self, raw_token: str, ip: str) -> AuthResult:
        """Rotate a refresh token: revoke it and issue a fresh access/refresh pair.

        Raises Unauthorized for unknown, revoked or expired tokens, and when
        the owning account or tenant has been deactivated.
        """
        with self.store.transaction() as conn:
            old = self.tokens.rotate(raw_token, ip, conn=conn)
            user = self.store.get_user(old.user_id, conn=conn)
            if user is None or not user.is_active:
                raise Unauthorized()
            tenant = self._active_tenant(user, conn)
            result = self._issue(user, tenant, ip, conn)
        logger.info("Refresh token rotated for user %s", user.id)
        self._cache(result)
        return result

    def revoke_token(self, raw_token: str, ip: str, user_id: Optional[str] = None) -> None:
        """Logout: revoke a refresh token and drop the user's session cache entry.

        When user_id is given the token must belong to that user; a token
        owned by someone else is reported exactly like an unknown one
        [IDOR guard].
        """
        with self.store.transaction() as conn:
            row = self.tokens.revoke(raw_token, ip, conn=conn)
            if user_id is not None and row.user_id != user_id:
                raise NotFound("Invalid or expired refresh token.")
        if self.session_cache is not None:
            self.session_cache.invalidate(row.user_id)
        logger.info("Refresh token revoked for user %s", row.user_id)

    def oauth_login(self, email: str, name: str, provider: str, tenant_domain: str, ip: str) -> AuthResult:
        """Log in with an identity an OAuth provider has already verified.

        Provisions the user on first login (no local password,
        email_confirmed=True, default role). Never checks a password.

        Two concurrent first logins for the same email race on the
        (email, tenant) constraint; the loser's transaction rolls back and it
        retries once, finding the winner's user.
        """
        email = normalize_email(email)
        if not email:
            raise Unauthorized("OAuth identity has no email.")
        try:
            result = self._oauth_login_once(email, name, provider, tenant_domain, ip)
        except ValidationConflict:
            result = self._oauth_login_once(email, name, provider, tenant_domain, ip)
        self._cache(result)
        return result

    def request_password_reset(
        self,
        email: str,
        tenant_domain: Optional[str] = None,
        notify: Optional[ResetNotifier] = None,
    ) -> bool:
        """Issue a reset token if the account exists. The caller must not expose the result."""
        return self.resets.request_reset(normalize_email(email), tenant_domain, notify=notify)

    def confirm_password_reset(self, token: str, new_password: str, ip: str = "unknown") -> bool:
        return self.resets.confirm_reset(token, new_password, ip=ip)

    # ------------------------------------------------------------------
    # Session and administration
    # ------------------------------------------------------------------

    def get_session(self, user_id: str) -> Optional[SessionEntry]:
        """Return the user's roles/permissions from cache, recomputing on a miss.

        Returns None for an unknown user.
        """
        if self.session_cache is not None:
            cached = self.session_cache.get(user_id)
            if cached is not None:
                return cached
        if self.store.get_user(user_id) is None:
            return None
        roles, permissions = self.permissions.for_user(user_id)
        if self.session_cache is not None:
            self.session_cache.put(user_id, roles, permissions, ttl=self._session_ttl)
        return SessionEntry(user_id=user_id, roles=roles, permissions=permissions)

    def assign_role(self, user_id: str, role_name: str, tenant_id: Optional[str] = None) -> bool:
        """Give a user a role. Returns False if they already held it.

        tenant_id, when given, restricts the target to that tenant; users of
        other tenants are reported as not found.
        """
        with self.store.transaction() as conn:
            user = self.store.get_user(user_id, conn=conn)
            if user is None or (tenant_id is not None and user.tenant_id != tenant_id):
                raise NotFound("User not found.")
            role = self.store.get_role_by_name(role_name, conn=conn)
            if role is None:
                raise NotFound(f"Role {role_name!r} not found.")
            added = self.store.assign_role(user.id, role.id, conn=conn)
        if self.session_cache is not None:
            self.session_cache.invalidate(user_id)
        return added

    def set_user_active(self, user_id: str, is_active: bool, ip: str, tenant_id: Optional[str] = None) -> User:
        """Activate or deactivate an account. Deactivation revokes its refresh tokens."""
        with self.store.transaction() as conn:
            user = self.store.get_user(user_id, conn=conn)
            if user is None or (tenant_id is not None and user.tenant_id != tenant_id):
                raise NotFound("User not found.")
            self.store.update_user(user_id, conn=conn, is_active=is_active)
            if not is_active:
                self.store.revoke_user_refresh_tokens(user_id, ip, conn=conn)
            updated = self.store.get_user(user_id, conn=conn)
        if self.session_cache is not None:
            self.session_cache.invalidate(user_id)
        return updated

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _oauth_login_once(self, email: str, name: str, provider: str, tenant_domain: str, ip: str) -> AuthResult:
        provider = provider.strip().lower()
        with self.store.transaction() as conn:
            tenant = self.tenants.resolve_or_create(tenant_domain, tenant_domain, conn=conn)
            if not tenant.is_active:
                raise Unauthorized()
            existing = self.store.find_users_by_email(email, tenant_domain=tenant.domain, conn=conn)
            if existing:
                user = existing[0]
                if not user.is_active:
                    raise Unauthorized()
                fields = {"last_login_at": now_iso()}
                if not user.email_confirmed:
                    fields["email_confirmed"] = True
                self.store.update_user(user.id, conn=conn, **fields)
            else:
                first_name, last_name = split_name(name)
                user = User(
                    tenant_id=tenant.id,
                    email=email,
                    first_name=first_name,
                    last_name=last_name,
                    password_hash=None,
                    auth_provider=provider,
                    is_active=True,
                    email_confirmed=True,
                )
                user.id = self.store.create_user(user, conn=conn)
                self._assign_default_role(user.id, conn)
                self.store.update_user(user.id, conn=conn, last_login_at=now_iso())
                logger.info("Provisioned %s user %s in tenant %s", provider, user.id, tenant.domain)
            result = self._issue(user, tenant, ip, conn)
        return result

    def _assign_default_role(self, user_id: str, conn: Connection) -> None:
        role = self.store.get_role_by_name(USER_ROLE, conn=conn)
        if role is not None:
            self.store.assign_role(user_id, role.id, conn=conn)
        else:
            logger.warning("Default role %r is missing; user %s has no roles", USER_ROLE, user_id)

    def _active_tenant(self, user: User, conn: Connection) -> Tenant:
        tenant = self.store.get_tenant(user.tenant_id, conn=conn)
        if tenant is None or not tenant.is_active:
            raise Unauthorized()
        return tenant

    def _issue(self, user: User, tenant: Tenant, ip: str, conn: Connection) -> AuthResult:
        roles, permissions = self.permissions.for_user(user.id, conn=conn)
        access_token, _ = self.tokens.issue_access_token(user, tenant, roles, permissions)
        raw_refresh, row = self.tokens.issue_refresh_token(user.id, ip, conn=conn)
        return AuthResult(
            access_token=access_token,
            refresh_token=raw_refresh,
            expires_at=row.expires_at,
            user=UserInfo(
                id=user.id,
                email=user.email,
                first_name=user.first_name,
                last_name=user.last_name,
                tenant_domain=tenant.domain,
                roles=roles,
                permissions=permissions,
            ),
        )

    def _cache(self, result: AuthResult) -> None:
        if self.session_cache is None:
            return
        self.session_cache.put(result.user.id, result.user.roles, result.user.permissions, ttl=self._session_ttl)
