"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. The orchestrator never touches SQL directly.

Transactions:
  Every method takes an optional `conn`. Called without one, the method runs
  in its own short transaction. The orchestrator opens one with
  store.transaction() and passes the connection through, so a use case
  (tenant create + user insert + role link + refresh token insert) commits
  or rolls back as a unit.

Uniqueness is enforced by the database, not by read-then-write checks:
  UNIQUE(domain) on tenants, UNIQUE(email, tenant_id) on users,
  UNIQUE(token_hash) on refresh_tokens, UNIQUE(resource, action) on
  permissions. insert_tenant_if_absent() uses INSERT .. ON CONFLICT DO
  NOTHING so concurrent first registrations for a new domain converge on a
  single row.

Error translation:
  IntegrityError on user insert  -> ValidationConflict
  OperationalError / InterfaceError while the store is unreachable
                                 -> TransientStoreFailure

Security:
  All queries use bound parameters. No f-strings in SQL.
  Refresh and reset tokens are stored as HMAC digests only.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError

from auth.errors import TransientStoreFailure, ValidationConflict
from auth.models import Permission, RefreshToken, Role, Tenant, User

_DEFAULT_DB_URL = "sqlite:///tenantauth.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_tenants = Table(
    "tenants",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("domain", String(100), nullable=False, unique=True),
    Column("name", String(200), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
)

_users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
    Column("email", String(256), nullable=False),
    Column("password_hash", Text),  # NULL for externally authenticated users
    Column("auth_provider", String(30)),  # "google", "github"; NULL for local users
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("email_confirmed", Integer, nullable=False, server_default="0"),
    Column("password_reset_token", String(64), index=True),  # HMAC digest
    Column("password_reset_token_expiry", String(32)),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
    UniqueConstraint("email", "tenant_id", name="uq_users_email_tenant"),
)

_roles = Table(
    "roles",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("description", String(500), nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
)

_permissions = Table(
    "permissions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False),
    Column("resource", String(100), nullable=False),
    Column("action", String(50), nullable=False),
    Column("description", String(500), nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("resource", "action", name="uq_permissions_resource_action"),
)

_user_roles = Table(
    "user_roles",
    metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("role_id", String(36), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("assigned_at", String(32), nullable=False),
    PrimaryKeyConstraint("user_id", "role_id"),
)

_role_permissions = Table(
    "role_permissions",
    metadata,
    Column("role_id", String(36), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("permission_id", String(36), ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False),
    Column("assigned_at", String(32), nullable=False),
    PrimaryKeyConstraint("role_id", "permission_id"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("created_by_ip", String(50), nullable=False),
    Column("revoked_at", String(32)),
    Column("revoked_by_ip", String(50)),
)

# ---------------------------------------------------------------------------
# Seed data
#
# Role ids are fixed so every deployment agrees on them. Permission ids are
# derived from the permission name, which keeps seeding idempotent.
# ---------------------------------------------------------------------------

ADMIN_ROLE = "Admin"
USER_ROLE = "User"

_SEED_ROLES: list[tuple[str, str, str]] = [
    ("11111111-1111-1111-1111-111111111111", ADMIN_ROLE, "Administrator with full access"),
    ("22222222-2222-2222-2222-222222222222", USER_ROLE, "Standard user with basic access"),
]

_SEED_PERMISSIONS: list[tuple[str, str, str]] = [
    ("users", "read", "Read users"),
    ("users", "create", "Create users"),
    ("users", "update", "Update users"),
    ("users", "delete", "Delete users"),
    ("roles", "read", "Read roles"),
    ("roles", "manage", "Manage roles"),
]

_SEED_GRANTS: dict[str, list[str]] = {
    ADMIN_ROLE: [f"{resource}.{action}" for resource, action, _ in _SEED_PERMISSIONS],
    USER_ROLE: ["users.read"],
}

_PERMISSION_NS = uuid.UUID("5b1f4a0e-8d0c-4f5e-9a43-2c7d1b6e0f11")


# ---------------------------------------------------------------------------
# Connection setup
# ---------------------------------------------------------------------------


def _sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable FK enforcement (cascade deletes) and WAL journal mode.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    """Current UTC time, fixed-width ISO 8601 so string comparison orders correctly."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _new_id() -> str:
    return str(uuid.uuid4())


def _insert_ignore(conn: Connection, table: Table, values: dict) -> bool:
    """INSERT a row unless it collides with a unique key. Returns True if inserted.

    SQLite and PostgreSQL get a native ON CONFLICT DO NOTHING. Other dialects
    fall back to a SAVEPOINT so the collision does not abort the enclosing
    transaction.
    """
    dialect = conn.dialect.name
    if dialect == "sqlite":
        stmt = sqlite.insert(table).values(**values).on_conflict_do_nothing()
    elif dialect == "postgresql":
        stmt = postgresql.insert(table).values(**values).on_conflict_do_nothing()
    else:
        try:
            with conn.begin_nested():
                conn.execute(table.insert().values(**values))
        except IntegrityError:
            return False
        return True
    return conn.execute(stmt).rowcount > 0


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for tenants, users, roles, permissions and refresh tokens.

    Usage:
        store = AuthStore("sqlite:///:memory:")
        with store.transaction() as conn:
            tenant = store.get_tenant_by_domain("acme.com", conn=conn)
            ...
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _sqlite_pragmas)
        metadata.create_all(self.engine)
        self._seed()

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Open a transaction; commit on success, roll back on any exception.

        Connectivity failures surface as TransientStoreFailure so callers can
        tell a retryable outage from an authentication decision.
        """
        try:
            with self.engine.begin() as conn:
                yield conn
        except (OperationalError, InterfaceError) as exc:
            raise TransientStoreFailure("Persistence store unavailable.") from exc

    @contextmanager
    def _conn(self, conn: Optional[Connection]) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self.transaction() as own:
            yield own

    def _seed(self) -> None:
        """Insert the built-in roles, permissions and grants if missing. Idempotent."""
        now = now_iso()
        with self.transaction() as conn:
            for role_id, name, description in _SEED_ROLES:
                _insert_ignore(
                    conn,
                    _roles,
                    {"id": role_id, "name": name, "description": description, "created_at": now},
                )
            for resource, action, description in _SEED_PERMISSIONS:
                name = f"{resource}.{action}"
                _insert_ignore(
                    conn,
                    _permissions,
                    {
                        "id": str(uuid.uuid5(_PERMISSION_NS, name)),
                        "name": name,
                        "resource": resource,
                        "action": action,
                        "description": description,
                        "created_at": now,
                    },
                )
            for role_name, permission_names in _SEED_GRANTS.items():
                role = self.get_role_by_name(role_name, conn=conn)
                if role is None:
                    continue
                for permission_name in permission_names:
                    permission = self.get_permission_by_name(permission_name, conn=conn)
                    if permission is not None:
                        self.grant_permission(role.id, permission.id, conn=conn)

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    def get_tenant(self, tenant_id: str, conn: Optional[Connection] = None) -> Optional[Tenant]:
        with self._conn(conn) as c:
            row = c.execute(_tenants.select().where(_tenants.c.id == tenant_id)).fetchone()
        return _row_to_tenant(row) if row is not None else None

    def get_tenant_by_domain(self, domain: str, conn: Optional[Connection] = None) -> Optional[Tenant]:
        """Exact match on the stored (lowercased) domain. Returns None if absent."""
        with self._conn(conn) as c:
            row = c.execute(_tenants.select().where(_tenants.c.domain == domain)).fetchone()
        return _row_to_tenant(row) if row is not None else None

    def insert_tenant_if_absent(self, tenant: Tenant, conn: Optional[Connection] = None) -> bool:
        """Insert the tenant unless its domain already exists. Returns True if this call created it."""
        with self._conn(conn) as c:
            return _insert_ignore(
                c,
                _tenants,
                {
                    "id": tenant.id or _new_id(),
                    "domain": tenant.domain,
                    "name": tenant.name,
                    "is_active": 1 if tenant.is_active else 0,
                    "created_at": now_iso(),
                },
            )

    def delete_tenant(self, tenant_id: str, conn: Optional[Connection] = None) -> bool:
        """Delete a tenant. Its users, their role links and refresh tokens cascade."""
        with self._conn(conn) as c:
            result = c.execute(_tenants.delete().where(_tenants.c.id == tenant_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User, conn: Optional[Connection] = None) -> str:
        """Insert a new user and return its id.

        Raises ValidationConflict if (email, tenant_id) already exists. Inside
        an enclosing transaction the caller must let the exception propagate
        so the whole unit rolls back.
        """
        user_id = user.id or _new_id()
        now = now_iso()
        with self._conn(conn) as c:
            try:
                c.execute(
                    _users.insert().values(
                        id=user_id,
                        tenant_id=user.tenant_id,
                        email=user.email,
                        password_hash=user.password_hash,
                        auth_provider=user.auth_provider,
                        first_name=user.first_name,
                        last_name=user.last_name,
                        is_active=1 if user.is_active else 0,
                        email_confirmed=1 if user.email_confirmed else 0,
                        created_at=now,
                    )
                )
            except IntegrityError as exc:
                raise ValidationConflict("A user with this email already exists in this tenant.") from exc
        return user_id

    def get_user(self, user_id: str, conn: Optional[Connection] = None) -> Optional[User]:
        with self._conn(conn) as c:
            row = c.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_users_by_email(
        self,
        email: str,
        tenant_domain: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> list[User]:
        """Return users with this email, scoped to tenant_domain when given.

        Without a domain the result can hold one user per tenant; the caller
        decides what an ambiguous match means.
        """
        query = _users.select().where(_users.c.email == email)
        if tenant_domain is not None:
            query = (
                select(_users)
                .join(_tenants, _tenants.c.id == _users.c.tenant_id)
                .where((_users.c.email == email) & (_tenants.c.domain == tenant_domain))
            )
        with self._conn(conn) as c:
            rows = c.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def get_user_by_reset_token(self, token_hash: str, conn: Optional[Connection] = None) -> Optional[User]:
        with self._conn(conn) as c:
            row = c.execute(_users.select().where(_users.c.password_reset_token == token_hash)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: str, conn: Optional[Connection] = None, **fields) -> bool:
        """Update mutable fields on an existing user.

        Boolean flags (is_active, email_confirmed) are converted to 0/1.
        updated_at is stamped on every call. Returns False if user_id is unknown.
        """
        for flag in ("is_active", "email_confirmed"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        fields.setdefault("updated_at", now_iso())
        with self._conn(conn) as c:
            result = c.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def get_role_by_name(self, name: str, conn: Optional[Connection] = None) -> Optional[Role]:
        with self._conn(conn) as c:
            row = c.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return Role(id=row.id, name=row.name, description=row.description) if row is not None else None

    def get_permission_by_name(self, name: str, conn: Optional[Connection] = None) -> Optional[Permission]:
        with self._conn(conn) as c:
            row = c.execute(_permissions.select().where(_permissions.c.name == name)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def grant_permission(self, role_id: str, permission_id: str, conn: Optional[Connection] = None) -> bool:
        with self._conn(conn) as c:
            return _insert_ignore(
                c,
                _role_permissions,
                {"role_id": role_id, "permission_id": permission_id, "assigned_at": now_iso()},
            )

    def assign_role(self, user_id: str, role_id: str, conn: Optional[Connection] = None) -> bool:
        """Link a role to a user. Returns False if the link already existed."""
        with self._conn(conn) as c:
            return _insert_ignore(
                c,
                _user_roles,
                {"user_id": user_id, "role_id": role_id, "assigned_at": now_iso()},
            )

    def list_role_grants(self, user_id: str, conn: Optional[Connection] = None) -> list[tuple[str, Optional[str]]]:
        """Return (role_name, permission_name) pairs for every role the user holds.

        One round trip: user_roles -> roles -> role_permissions -> permissions.
        The permission side is outer-joined, so a role with no permissions
        still shows up as (role_name, None).
        """
        query = (
            select(_roles.c.name, _permissions.c.name)
            .select_from(_user_roles)
            .join(_roles, _roles.c.id == _user_roles.c.role_id)
            .outerjoin(_role_permissions, _role_permissions.c.role_id == _roles.c.id)
            .outerjoin(_permissions, _permissions.c.id == _role_permissions.c.permission_id)
            .where(_user_roles.c.user_id == user_id)
        )
        with self._conn(conn) as c:
            rows = c.execute(query).fetchall()
        return [(r[0], r[1]) for r in rows]

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken, conn: Optional[Connection] = None) -> str:
        token_id = token.id or _new_id()
        with self._conn(conn) as c:
            c.execute(
                _refresh_tokens.insert().values(
                    id=token_id,
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=token.expires_at,
                    is_revoked=0,
                    created_at=token.created_at or now_iso(),
                    created_by_ip=token.created_by_ip,
                )
            )
        return token_id

    def get_refresh_token(self, token_hash: str, conn: Optional[Connection] = None) -> Optional[RefreshToken]:
        with self._conn(conn) as c:
            row = c.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def list_refresh_tokens(self, user_id: str, conn: Optional[Connection] = None) -> list[RefreshToken]:
        with self._conn(conn) as c:
            rows = c.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.created_at)
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def revoke_refresh_token(self, token_hash: str, ip: str, conn: Optional[Connection] = None) -> bool:
        """Revoke the token if, and only if, it is still active.

        The active check lives in the UPDATE's WHERE clause, so it is
        re-evaluated atomically with the write: of two concurrent callers
        exactly one sees rowcount 1.
        """
        now = now_iso()
        with self._conn(conn) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_hash == token_hash)
                    & (_refresh_tokens.c.is_revoked == 0)
                    & (_refresh_tokens.c.expires_at > now)
                )
                .values(is_revoked=1, revoked_at=now, revoked_by_ip=ip)
            )
        return result.rowcount == 1

    def revoke_user_refresh_tokens(self, user_id: str, ip: str, conn: Optional[Connection] = None) -> int:
        """Revoke every still-active refresh token a user holds. Returns the count."""
        now = now_iso()
        with self._conn(conn) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.is_revoked == 0)
                    & (_refresh_tokens.c.expires_at > now)
                )
                .values(is_revoked=1, revoked_at=now, revoked_by_ip=ip)
            )
        return result.rowcount

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_tenant(row) -> Tenant:
    return Tenant(
        id=row.id,
        domain=row.domain,
        name=row.name,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        tenant_id=row.tenant_id,
        email=row.email,
        password_hash=row.password_hash,
        auth_provider=row.auth_provider,
        first_name=row.first_name,
        last_name=row.last_name,
        is_active=bool(row.is_active),
        email_confirmed=bool(row.email_confirmed),
        password_reset_token=row.password_reset_token,
        password_reset_token_expiry=row.password_reset_token_expiry,
        last_login_at=row.last_login_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        name=row.name,
        resource=row.resource,
        action=row.action,
        description=row.description,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        is_revoked=bool(row.is_revoked),
        created_at=row.created_at,
        created_by_ip=row.created_by_ip,
        revoked_at=row.revoked_at,
        revoked_by_ip=row.revoked_by_ip,
    )
