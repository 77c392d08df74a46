"""
auth/tenants.py -- Tenant resolution by domain.

Domains are compared case-insensitively: every entry point normalizes with
normalize_domain() before touching the store, and the store only ever holds
the normalized form.

resolve_or_create() is single-writer by construction. It does not check and
then insert; it inserts-if-absent (the UNIQUE(domain) constraint decides the
winner) and then reads back whichever row won. Two concurrent first
registrations for the same new domain therefore end up on the same tenant.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.engine import Connection

from auth.models import Tenant
from auth.store import AuthStore

logger = logging.getLogger("tenantauth.auth.tenants")


def normalize_domain(domain: str) -> str:
    return domain.strip().lower()


class TenantResolver:
    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def resolve(self, domain: str, conn: Optional[Connection] = None) -> Optional[Tenant]:
        """Return the tenant owning this domain, or None."""
        return self.store.get_tenant_by_domain(normalize_domain(domain), conn=conn)

    def resolve_or_create(self, domain: str, display_name: str = "", conn: Optional[Connection] = None) -> Tenant:
        """Return the tenant for this domain, creating an active one if absent.

        Used by registration and OAuth provisioning only. Login and password
        reset never create tenants. Both callers pass the domain itself as
        display_name, so a tenant is named after its domain; an empty
        display_name falls back to the domain as well. The name of an
        existing tenant is never changed.
        """
        normalized = normalize_domain(domain)
        if not normalized:
            raise ValueError("Tenant domain must not be empty.")
        created = self.store.insert_tenant_if_absent(
            Tenant(domain=normalized, name=display_name.strip() or normalized),
            conn=conn,
        )
        tenant = self.store.get_tenant_by_domain(normalized, conn=conn)
        if tenant is None:
            # Unreachable unless the row was deleted between insert and select.
            raise LookupError(f"Tenant {normalized!r} vanished during resolution.")
        if created:
            logger.info("Tenant created: %s", normalized)
        return tenant
