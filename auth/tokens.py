"""
auth/tokens.py -- Access tokens (JWT), refresh tokens, and token digests.

Security design decisions:
  Access tokens: python-jose with HS256, signed with SECRET_KEY. Claims carry
       subject, email, display name, tenant, roles[] and permissions[], plus
       iss/aud/iat/exp/jti. validate_access_token() checks signature, issuer,
       audience and expiry and returns None on any failure -- an invalid token
       is an expected outcome, not an exception path. Route dependencies turn
       None into a 401.

  Refresh tokens: 64 bytes from secrets.token_bytes(), base64-encoded.
       Only HMAC-SHA256(SECRET_KEY, raw) is persisted, so a database dump
       does not yield usable tokens. Deterministic digests keep lookup O(1).

  Rotation: the old token is revoked by a conditional UPDATE whose WHERE
       clause re-checks "not revoked and not expired" inside the caller's
       transaction. Of two concurrent rotations of the same token exactly one
       succeeds; the other gets Unauthorized. The replacement is always a
       freshly generated string.

  Refresh-token state: Active -> Revoked, terminal. Expiry is derived from
       expires_at at check time; nothing sweeps expired rows.

Settings arrive through the constructor. Nothing here reads configuration
from a global.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from sqlalchemy.engine import Connection

from auth.errors import NotFound, Unauthorized
from auth.models import AccessClaims, RefreshToken, Tenant, User
from auth.store import AuthStore, to_iso
from core.config import Settings

logger = logging.getLogger("tenantauth.auth.tokens")

_ALGORITHM = "HS256"
REFRESH_TOKEN_BYTES = 64


class TokenService:
    def __init__(self, settings: Settings, store: AuthStore) -> None:
        self._secret = settings.secret_key
        self._issuer = settings.jwt_issuer
        self._audience = settings.jwt_audience
        self._access_ttl = timedelta(minutes=settings.access_token_expire_minutes)
        self._refresh_ttl = timedelta(days=settings.refresh_token_expire_days)
        self.store = store

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access_token(
        self,
        user: User,
        tenant: Tenant,
        roles: list[str],
        permissions: list[str],
    ) -> tuple[str, datetime]:
        """Encode a signed JWT for the user. Returns (token, expires_at)."""
        issued_at = datetime.now(timezone.utc)
        expires_at = issued_at + self._access_ttl
        payload = {
            "sub": user.id,
            "email": user.email,
            "name": user.display_name,
            "tenant_id": tenant.id,
            "tenant": tenant.domain,
            "roles": list(roles),
            "permissions": list(permissions),
            "iss": self._issuer,
            "aud": self._audience,
            "iat": issued_at,
            "exp": expires_at,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM), expires_at

    def validate_access_token(self, token: str) -> Optional[AccessClaims]:
        """Verify a JWT and return its typed claims, or None on any failure."""
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
            )
        except JWTError:
            return None
        try:
            return AccessClaims(
                subject=payload["sub"],
                email=payload["email"],
                name=payload.get("name", ""),
                tenant_id=payload["tenant_id"],
                tenant_domain=payload.get("tenant", ""),
                roles=tuple(payload.get("roles", [])),
                permissions=tuple(payload.get("permissions", [])),
                issuer=payload["iss"],
                audience=payload["aud"],
                expires_at=int(payload["exp"]),
                token_id=payload.get("jti", ""),
            )
        except (KeyError, TypeError, ValueError):
            return None

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    @staticmethod
    def generate_refresh_token() -> str:
        """Return base64(64 random bytes). Collisions are treated as impossible."""
        return base64.b64encode(secrets.token_bytes(REFRESH_TOKEN_BYTES)).decode("ascii")

    def digest(self, raw_token: str) -> str:
        """HMAC-SHA256(SECRET_KEY, raw_token) as hex -- the only form that is persisted."""
        return hmac.new(self._secret.encode(), raw_token.encode(), hashlib.sha256).hexdigest()

    def issue_refresh_token(self, user_id: str, ip: str, conn: Optional[Connection] = None) -> tuple[str, RefreshToken]:
        """Generate and persist a new refresh token. Returns (raw_token, row)."""
        raw = self.generate_refresh_token()
        now = datetime.now(timezone.utc)
        row = RefreshToken(
            user_id=user_id,
            token_hash=self.digest(raw),
            expires_at=to_iso(now + self._refresh_ttl),
            created_by_ip=ip,
            created_at=to_iso(now),
        )
        row.id = self.store.create_refresh_token(row, conn=conn)
        return raw, row

    def rotate(self, raw_token: str, ip: str, conn: Optional[Connection] = None) -> RefreshToken:
        """Revoke an active refresh token so the caller can issue its replacement.

        Returns the (now revoked) row. Raises Unauthorized when the token is
        unknown, already revoked, or expired.
        """
        token_hash = self.digest(raw_token)
        if not self.store.revoke_refresh_token(token_hash, ip, conn=conn):
            raise Unauthorized("Invalid or expired refresh token.")
        row = self.store.get_refresh_token(token_hash, conn=conn)
        if row is None:
            raise Unauthorized("Invalid or expired refresh token.")
        return row

    def revoke(self, raw_token: str, ip: str, conn: Optional[Connection] = None) -> RefreshToken:
        """Revoke an active refresh token without issuing anything (logout).

        Raises NotFound when the token is unknown or no longer active.
        """
        token_hash = self.digest(raw_token)
        if not self.store.revoke_refresh_token(token_hash, ip, conn=conn):
            raise NotFound("Invalid or expired refresh token.")
        row = self.store.get_refresh_token(token_hash, conn=conn)
        if row is None:
            raise NotFound("Invalid or expired refresh token.")
        return row
