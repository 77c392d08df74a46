"""
auth/permissions.py -- Flatten a user's roles into roles + permissions.

aggregate() is a pure function over the (role_name, permission_name) pairs
returned by AuthStore.list_role_grants(). The effective permission set is the
deduplicated union across every assigned role. Order carries no meaning; the
output is sorted only so tokens and responses are stable.

A user with no roles gets ([], []), not an error.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Optional

from sqlalchemy.engine import Connection

from auth.store import AuthStore


def aggregate(grants: Iterable[tuple[str, Optional[str]]]) -> tuple[list[str], list[str]]:
    roles: set[str] = set()
    permissions: set[str] = set()
    for role_name, permission_name in grants:
        roles.add(role_name)
        if permission_name:
            permissions.add(permission_name)
    return sorted(roles), sorted(permissions)


class PermissionAggregator:
    """Store-backed wrapper: one joined query per call, then aggregate()."""

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def for_user(self, user_id: str, conn: Optional[Connection] = None) -> tuple[list[str], list[str]]:
        return aggregate(self.store.list_role_grants(user_id, conn=conn))
