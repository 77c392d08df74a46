"""
cache/session.py -- Redis-backed session cache of a user's roles/permissions.

Write-through projection, keyed by user id:
    user_session:{user_id} -> {"user_id": ..., "roles": [...], "permissions": [...]}

The cache is never the system of record. A missing or unreadable entry is
not an error -- callers recompute from the relational data and put() again.
Every Redis failure is logged and swallowed here: a cache outage must not
turn a successful login into a failed one.

Usage:
    cache = SessionCache.from_url("redis://localhost:6379/0", ttl_seconds=900)
    cache.put(user_id, ["User"], ["users.read"])
    entry = cache.get(user_id)       # SessionEntry or None
    cache.invalidate(user_id)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Optional

import redis

logger = logging.getLogger("tenantauth.cache.session")

_DEFAULT_TTL = 15 * 60  # 15 minutes in seconds
KEY_PREFIX = "user_session:"


@dataclass
class SessionEntry:
    """Disposable projection of a user's roles and permissions."""

    user_id: str
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)


def session_key(user_id: str) -> str:
    return f"{KEY_PREFIX}{user_id}"


class SessionCache:
    def __init__(self, client: redis.Redis, ttl_seconds: int = _DEFAULT_TTL) -> None:
        self.client = client
        self.ttl = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = _DEFAULT_TTL, socket_timeout: float = 2.0) -> "SessionCache":
        client = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, ttl_seconds)

    def put(self, user_id: str, roles: list[str], permissions: list[str], ttl: Optional[int] = None) -> bool:
        """Store the projection with a TTL. Returns False if Redis refused it."""
        payload = json.dumps({"user_id": user_id, "roles": list(roles), "permissions": list(permissions)})
        try:
            self.client.set(session_key(user_id), payload, ex=ttl or self.ttl)
        except redis.RedisError:
            logger.warning("Session cache write failed for user %s", user_id, exc_info=True)
            return False
        return True

    def get(self, user_id: str) -> Optional[SessionEntry]:
        """Return the cached entry, or None if absent, expired, unreadable, or Redis is down."""
        try:
            raw = self.client.get(session_key(user_id))
        except redis.RedisError:
            logger.warning("Session cache read failed for user %s", user_id, exc_info=True)
            return None
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return SessionEntry(
                user_id=data["user_id"],
                roles=list(data.get("roles", [])),
                permissions=list(data.get("permissions", [])),
            )
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding malformed session cache entry for user %s", user_id)
            self.invalidate(user_id)
            return None

    def exists(self, user_id: str) -> bool:
        try:
            return bool(self.client.exists(session_key(user_id)))
        except redis.RedisError:
            logger.warning("Session cache lookup failed for user %s", user_id, exc_info=True)
            return False

    def invalidate(self, user_id: str) -> None:
        try:
            self.client.delete(session_key(user_id))
        except redis.RedisError:
            logger.warning("Session cache delete failed for user %s", user_id, exc_info=True)

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            logger.warning("Session cache ping failed", exc_info=True)
            return False

    def close(self) -> None:
        self.client.close()
