"""
auth/reset.py -- Single-use password reset tokens.

Flow:
  request_reset(email, tenant_domain) -> bool
      Finds the user (scoped to the tenant when a domain is given, by email
      alone otherwise). On a match, stores HMAC(raw token) plus an expiry on
      the user row, hands the raw token to `notify`, and returns True. No
      match returns False. The HTTP layer answers both cases identically, so
      the boolean never reaches the outside world [anti-enumeration].

  confirm_reset(token, new_password) -> bool
      False (never an exception) if the token is unknown, has no expiry, or
      has expired. Otherwise replaces the password hash, clears the token and
      its expiry, and revokes the user's active refresh tokens, all in one
      transaction. Clearing the token is what makes it single-use.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Optional

from auth.models import Tenant, User
from auth.passwords import hash_password
from auth.store import AuthStore, now_iso, to_iso
from auth.tenants import normalize_domain
from auth.tokens import TokenService
from cache.session import SessionCache
from core.config import Settings

logger = logging.getLogger("tenantauth.auth.reset")

# notify(user, tenant, raw_token) -- called only when a token was issued.
ResetNotifier = Callable[[User, Tenant, str], None]


def find_user(store: AuthStore, email: str, tenant_domain: Optional[str], conn=None) -> Optional[User]:
    """Resolve a user by email, scoped to a tenant domain when one is given.

    Without a domain the lookup spans all tenants. If the email exists in
    more than one tenant the match is ambiguous and treated as no match.
    """
    domain = normalize_domain(tenant_domain) if tenant_domain else None
    users = store.find_users_by_email(email, tenant_domain=domain, conn=conn)
    if len(users) > 1:
        logger.info("Email lookup without tenant domain matched %d tenants; refusing to guess", len(users))
        return None
    return users[0] if users else None


class PasswordResetFlow:
    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        settings: Settings,
        session_cache: Optional[SessionCache] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self._ttl = timedelta(minutes=settings.password_reset_expire_minutes)
        self.session_cache = session_cache

    def request_reset(
        self,
        email: str,
        tenant_domain: Optional[str] = None,
        notify: Optional[ResetNotifier] = None,
    ) -> bool:
        raw_token = secrets.token_urlsafe(32)
        with self.store.transaction() as conn:
            user = find_user(self.store, email, tenant_domain, conn=conn)
            if user is None:
                return False
            tenant = self.store.get_tenant(user.tenant_id, conn=conn)
            self.store.update_user(
                user.id,
                conn=conn,
                password_reset_token=self.tokens.digest(raw_token),
                password_reset_token_expiry=to_iso(datetime.now(timezone.utc) + self._ttl),
            )
        logger.info("Password reset token issued for user %s", user.id)
        if notify is not None and tenant is not None:
            notify(user, tenant, raw_token)
        return True

    def confirm_reset(self, token: str, new_password: str, ip: str = "unknown") -> bool:
        if not token:
            return False
        token_hash = self.tokens.digest(token)
        with self.store.transaction() as conn:
            user = self.store.get_user_by_reset_token(token_hash, conn=conn)
            if user is None or not user.password_reset_token_expiry:
                return False
            if user.password_reset_token_expiry < now_iso():
                return False
            self.store.update_user(
                user.id,
                conn=conn,
                password_hash=hash_password(new_password),
                password_reset_token=None,
                password_reset_token_expiry=None,
            )
            revoked = self.store.revoke_user_refresh_tokens(user.id, ip, conn=conn)
        if self.session_cache is not None:
            self.session_cache.invalidate(user.id)
        logger.info("Password reset completed for user %s (%d refresh tokens revoked)", user.id, revoked)
        return True
