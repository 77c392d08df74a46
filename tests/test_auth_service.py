"""Unit tests for auth/service.py -- the authentication use cases end to end.

Runs against a real in-memory store and the FakeRedis-backed session cache;
the concurrency tests use a file-backed SQLite database.

Covers:
- register: tokens + default role, tenant created on first use, per-tenant email uniqueness
- login: wrong password / unknown email / deactivated user / OAuth-only user -> Unauthorized
- login without tenant domain: unique email works, ambiguous email fails
- refresh: old row revoked, new distinct token active, replay rejected
- logout: revoke + session invalidation, ownership check
- oauth_login: provisioning, reuse of existing user, inactive rejection
- password reset through the service: unknown email leaves the store untouched
- session: cache hit, recompute on miss, Redis outage does not fail login
- register: atomic with tenant creation, rejected for a deactivated tenant, survives a cache outage
- admin: assign_role and set_user_active invalidate the cache and respect tenant scope
- concurrency: one winner per refresh-token rotation, one tenant per new domain
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import text

from auth.errors import AuthError, NotFound, Unauthorized, ValidationConflict
from auth.passwords import verify_password
from auth.service import AuthService, split_name
from auth.store import AuthStore, now_iso
from auth.tokens import TokenService
from cache.session import SessionCache

PASSWORD = "Pw123!-long-enough"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _register(service: AuthService, email: str = "alice@acme.com", domain: str = "acme.com", password: str = PASSWORD):
    return service.register(email, password, "Alice", "Smith", domain, ip="10.0.0.1")


def _table_counts(store: AuthStore) -> dict[str, int]:
    with store.engine.connect() as conn:
        return {
            table: conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar_one()  # noqa: S608 -- fixed names
            for table in ("tenants", "users", "user_roles", "refresh_tokens")
        }


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register_issues_tokens_with_default_role(
        self, service: AuthService, tokens: TokenService, store: AuthStore
    ) -> None:
        result = _register(service)

        assert result.access_token
        assert result.refresh_token
        assert result.user.roles == ["User"]
        assert result.user.permissions == ["users.read"]
        assert result.user.tenant_domain == "acme.com"

        claims = tokens.validate_access_token(result.access_token)
        assert claims.subject == result.user.id
        assert claims.roles == ("User",)
        assert store.get_refresh_token(tokens.digest(result.refresh_token)).is_active(now_iso())

    def test_register_creates_tenant_once(self, service: AuthService, store: AuthStore) -> None:
        _register(service, "alice@acme.com", "Acme.com")
        _register(service, "bob@acme.com", "acme.com")
        assert _table_counts(store)["tenants"] == 1

    def test_register_stores_normalized_email_and_hash(self, service: AuthService, store: AuthStore) -> None:
        result = _register(service, email="  Alice@ACME.com ")
        user = store.get_user(result.user.id)
        assert user.email == "alice@acme.com"
        assert user.password_hash != PASSWORD
        assert verify_password(PASSWORD, user.password_hash)
        assert user.is_active
        assert not user.email_confirmed

    def test_duplicate_in_same_tenant_conflicts_and_rolls_back(self, service: AuthService, store: AuthStore) -> None:
        _register(service)
        before = _table_counts(store)
        with pytest.raises(ValidationConflict):
            _register(service, email="ALICE@acme.com")
        assert _table_counts(store) == before

    def test_short_password_end_to_end(self, service: AuthService) -> None:
        result = service.register("alice@acme.com", "Pw123!", "", "", "acme.com", ip="10.0.0.1")
        assert result.access_token
        assert result.refresh_token
        assert result.user.roles == ["User"]
        assert service.login("alice@acme.com", "Pw123!", "acme.com", ip="10.0.0.2").access_token

    def test_new_tenant_rolls_back_when_user_insert_fails(
        self, service: AuthService, store: AuthStore, monkeypatch
    ) -> None:
        def fail_insert(user, conn=None):
            raise RuntimeError("insert failed")

        monkeypatch.setattr(store, "create_user", fail_insert)
        with pytest.raises(RuntimeError):
            _register(service, domain="newco.io")
        assert store.get_tenant_by_domain("newco.io") is None
        assert _table_counts(store) == {"tenants": 0, "users": 0, "user_roles": 0, "refresh_tokens": 0}

    def test_register_into_deactivated_tenant(self, service: AuthService, store: AuthStore) -> None:
        _register(service)
        with store.engine.begin() as conn:
            conn.execute(text("UPDATE tenants SET is_active = 0"))
        before = _table_counts(store)
        with pytest.raises(Unauthorized):
            _register(service, email="carol@acme.com")
        assert _table_counts(store) == before

    def test_cache_outage_does_not_fail_register(self, service: AuthService, fake_redis) -> None:
        fake_redis.fail = True
        result = _register(service)
        assert result.access_token
        assert result.user.roles == ["User"]

    def test_new_tenant_is_named_after_its_domain(self, service: AuthService, store: AuthStore) -> None:
        _register(service, domain="newco.io")
        assert store.get_tenant_by_domain("newco.io").name == "newco.io"

    def test_same_email_in_other_tenant_is_allowed(self, service: AuthService) -> None:
        first = _register(service, domain="acme.com")
        second = _register(service, domain="globex.com")
        assert first.user.id != second.user.id
        assert second.user.tenant_domain == "globex.com"


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_success_stamps_last_login(self, service: AuthService, store: AuthStore) -> None:
        registered = _register(service)
        result = service.login("alice@acme.com", PASSWORD, "acme.com", ip="10.0.0.2")
        assert result.user.id == registered.user.id
        assert result.refresh_token != registered.refresh_token
        assert store.get_user(registered.user.id).last_login_at is not None

    def test_wrong_password(self, service: AuthService) -> None:
        _register(service)
        with pytest.raises(Unauthorized) as excinfo:
            service.login("alice@acme.com", "wrong-password", "acme.com", ip="10.0.0.2")
        assert excinfo.value.message == "Invalid credentials."

    def test_unknown_email_same_error(self, service: AuthService) -> None:
        _register(service)
        with pytest.raises(Unauthorized) as excinfo:
            service.login("mallory@acme.com", PASSWORD, "acme.com", ip="10.0.0.2")
        assert excinfo.value.message == "Invalid credentials."

    def test_wrong_tenant(self, service: AuthService) -> None:
        _register(service, domain="acme.com")
        with pytest.raises(Unauthorized):
            service.login("alice@acme.com", PASSWORD, "globex.com", ip="10.0.0.2")

    def test_deactivated_user(self, service: AuthService, store: AuthStore) -> None:
        result = _register(service)
        store.update_user(result.user.id, is_active=False)
        with pytest.raises(Unauthorized):
            service.login("alice@acme.com", PASSWORD, "acme.com", ip="10.0.0.2")

    def test_deactivated_tenant(self, service: AuthService, store: AuthStore) -> None:
        _register(service)
        with store.engine.begin() as conn:
            conn.execute(text("UPDATE tenants SET is_active = 0"))
        with pytest.raises(Unauthorized):
            service.login("alice@acme.com", PASSWORD, "acme.com", ip="10.0.0.2")

    def test_no_refresh_token_on_failure(self, service: AuthService, store: AuthStore) -> None:
        _register(service)
        before = _table_counts(store)["refresh_tokens"]
        with pytest.raises(Unauthorized):
            service.login("alice@acme.com", "nope", "acme.com", ip="10.0.0.2")
        assert _table_counts(store)["refresh_tokens"] == before

    def test_login_without_domain_unique_email(self, service: AuthService) -> None:
        _register(service)
        assert service.login("alice@acme.com", PASSWORD, None, ip="10.0.0.2").user.tenant_domain == "acme.com"

    def test_login_without_domain_ambiguous_email(self, service: AuthService) -> None:
        _register(service, domain="acme.com")
        _register(service, domain="globex.com")
        with pytest.raises(Unauthorized):
            service.login("alice@acme.com", PASSWORD, None, ip="10.0.0.2")

    def test_oauth_only_user_cannot_use_password(self, service: AuthService) -> None:
        service.oauth_login("olivia@acme.com", "Olivia Doe", "google", "acme.com", ip="10.0.0.1")
        with pytest.raises(Unauthorized):
            service.login("olivia@acme.com", "", "acme.com", ip="10.0.0.2")


# ---------------------------------------------------------------------------
# Refresh and logout
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_rotation(self, service: AuthService, tokens: TokenService, store: AuthStore) -> None:
        first = _register(service)

        second = service.refresh_token(first.refresh_token, ip="10.0.0.3")

        assert second.refresh_token != first.refresh_token
        old_row = store.get_refresh_token(tokens.digest(first.refresh_token))
        new_row = store.get_refresh_token(tokens.digest(second.refresh_token))
        assert old_row.is_revoked
        assert old_row.revoked_by_ip == "10.0.0.3"
        assert not new_row.is_revoked
        assert new_row.created_by_ip == "10.0.0.3"
        assert tokens.validate_access_token(second.access_token).subject == first.user.id

    def test_replay_of_rotated_token(self, service: AuthService) -> None:
        first = _register(service)
        service.refresh_token(first.refresh_token, ip="10.0.0.3")
        with pytest.raises(Unauthorized):
            service.refresh_token(first.refresh_token, ip="10.0.0.4")

    def test_cache_outage_does_not_fail_refresh(self, service: AuthService, fake_redis) -> None:
        first = _register(service)
        fake_redis.fail = True
        second = service.refresh_token(first.refresh_token, ip="10.0.0.3")
        assert second.refresh_token != first.refresh_token

    def test_expired_token(self, service: AuthService, store: AuthStore) -> None:
        first = _register(service)
        with store.engine.begin() as conn:
            conn.execute(text("UPDATE refresh_tokens SET expires_at = '2000-01-01T00:00:00.000000+00:00'"))
        with pytest.raises(Unauthorized):
            service.refresh_token(first.refresh_token, ip="10.0.0.3")

    def test_deactivated_user_cannot_refresh(self, service: AuthService, store: AuthStore, tokens: TokenService) -> None:
        first = _register(service)
        store.update_user(first.user.id, is_active=False)
        with pytest.raises(Unauthorized):
            service.refresh_token(first.refresh_token, ip="10.0.0.3")
        # The failed rotation rolled back with everything else.
        assert not store.get_refresh_token(tokens.digest(first.refresh_token)).is_revoked

    def test_role_change_shows_up_after_refresh(self, service: AuthService, tokens: TokenService) -> None:
        first = _register(service)
        service.assign_role(first.user.id, "Admin")
        second = service.refresh_token(first.refresh_token, ip="10.0.0.3")
        assert tokens.validate_access_token(second.access_token).roles == ("Admin", "User")


class TestLogout:
    def test_revoke_invalidates_cache(self, service: AuthService, session_cache: SessionCache) -> None:
        result = _register(service)
        assert session_cache.get(result.user.id) is not None

        service.revoke_token(result.refresh_token, ip="10.0.0.9", user_id=result.user.id)

        assert session_cache.get(result.user.id) is None
        with pytest.raises(Unauthorized):
            service.refresh_token(result.refresh_token, ip="10.0.0.9")

    def test_revoke_twice(self, service: AuthService) -> None:
        result = _register(service)
        service.revoke_token(result.refresh_token, ip="10.0.0.9")
        with pytest.raises(NotFound):
            service.revoke_token(result.refresh_token, ip="10.0.0.9")

    def test_cannot_revoke_someone_elses_token(self, service: AuthService, store: AuthStore, tokens: TokenService) -> None:
        alice = _register(service, "alice@acme.com")
        bob = _register(service, "bob@acme.com")
        with pytest.raises(NotFound):
            service.revoke_token(alice.refresh_token, ip="10.0.0.9", user_id=bob.user.id)
        assert not store.get_refresh_token(tokens.digest(alice.refresh_token)).is_revoked


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class TestOAuthLogin:
    def test_first_login_provisions_user(self, service: AuthService, store: AuthStore) -> None:
        result = service.oauth_login("Olivia@Acme.com", "Olivia Van Doe", "GitHub", "newco.io", ip="10.0.0.1")

        user = store.get_user(result.user.id)
        assert user.email == "olivia@acme.com"
        assert user.password_hash is None
        assert user.auth_provider == "github"
        assert user.email_confirmed
        assert (user.first_name, user.last_name) == ("Olivia", "Van Doe")
        assert result.user.roles == ["User"]
        assert store.get_tenant_by_domain("newco.io") is not None

    def test_second_login_reuses_user(self, service: AuthService, store: AuthStore) -> None:
        first = service.oauth_login("olivia@acme.com", "Olivia", "google", "acme.com", ip="10.0.0.1")
        second = service.oauth_login("olivia@acme.com", "Olivia", "google", "acme.com", ip="10.0.0.1")
        assert first.user.id == second.user.id
        assert _table_counts(store)["users"] == 1

    def test_links_existing_local_account(self, service: AuthService, store: AuthStore) -> None:
        local = _register(service)
        result = service.oauth_login("alice@acme.com", "Alice Smith", "google", "acme.com", ip="10.0.0.1")
        assert result.user.id == local.user.id
        user = store.get_user(local.user.id)
        assert user.email_confirmed
        assert user.password_hash is not None

    def test_inactive_user_rejected(self, service: AuthService, store: AuthStore) -> None:
        first = service.oauth_login("olivia@acme.com", "Olivia", "google", "acme.com", ip="10.0.0.1")
        store.update_user(first.user.id, is_active=False)
        with pytest.raises(Unauthorized):
            service.oauth_login("olivia@acme.com", "Olivia", "google", "acme.com", ip="10.0.0.1")

    def test_split_name(self) -> None:
        assert split_name("Ada") == ("Ada", "")
        assert split_name("  Ada   King Lovelace ") == ("Ada", "King Lovelace")
        assert split_name("") == ("", "")


# ---------------------------------------------------------------------------
# Password reset through the service
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_unknown_email_leaves_store_unchanged(self, service: AuthService, store: AuthStore) -> None:
        _register(service)
        before = store.get_user(service.store.find_users_by_email("alice@acme.com")[0].id)
        counts = _table_counts(store)

        assert service.request_password_reset("nobody@acme.com", "acme.com") is False

        assert _table_counts(store) == counts
        after = store.get_user(before.id)
        assert after.password_reset_token is None
        assert after.updated_at == before.updated_at

    def test_reset_then_login_with_new_password(self, service: AuthService) -> None:
        _register(service)
        issued = []
        service.request_password_reset("ALICE@acme.com", "acme.com", notify=lambda u, t, raw: issued.append(raw))
        assert len(issued) == 1

        assert service.confirm_password_reset(issued[0], "completely-new-pw") is True

        with pytest.raises(Unauthorized):
            service.login("alice@acme.com", PASSWORD, "acme.com", ip="10.0.0.2")
        assert service.login("alice@acme.com", "completely-new-pw", "acme.com", ip="10.0.0.2").access_token


# ---------------------------------------------------------------------------
# Session cache and administration
# ---------------------------------------------------------------------------


class TestSession:
    def test_login_populates_cache(self, service: AuthService, session_cache: SessionCache) -> None:
        result = _register(service)
        entry = session_cache.get(result.user.id)
        assert entry.roles == ["User"]
        assert entry.permissions == ["users.read"]

    def test_get_session_recomputes_on_miss(self, service: AuthService, session_cache: SessionCache) -> None:
        result = _register(service)
        session_cache.invalidate(result.user.id)

        entry = service.get_session(result.user.id)

        assert entry.roles == ["User"]
        assert session_cache.get(result.user.id) is not None

    def test_get_session_unknown_user(self, service: AuthService) -> None:
        assert service.get_session("no-such-user") is None

    def test_redis_outage_does_not_fail_login(self, service: AuthService, fake_redis) -> None:
        _register(service)
        fake_redis.fail = True
        result = service.login("alice@acme.com", PASSWORD, "acme.com", ip="10.0.0.2")
        assert result.access_token
        assert service.get_session(result.user.id).roles == ["User"]

    def test_service_without_cache(self, store: AuthStore, tokens: TokenService, settings) -> None:
        service = AuthService(store, tokens, settings)
        result = _register(service)
        assert service.get_session(result.user.id).permissions == ["users.read"]


class TestAdministration:
    def test_assign_role_invalidates_cache(self, service: AuthService, session_cache: SessionCache) -> None:
        result = _register(service)
        assert service.assign_role(result.user.id, "Admin") is True
        assert session_cache.get(result.user.id) is None
        assert "roles.manage" in service.get_session(result.user.id).permissions
        assert service.assign_role(result.user.id, "Admin") is False

    def test_assign_unknown_role(self, service: AuthService) -> None:
        result = _register(service)
        with pytest.raises(NotFound):
            service.assign_role(result.user.id, "Overlord")

    def test_assign_role_across_tenants_is_not_found(self, service: AuthService, store: AuthStore) -> None:
        target = _register(service, domain="globex.com")
        acme = store.get_tenant_by_domain(_register(service, "admin@acme.com").user.tenant_domain)
        with pytest.raises(NotFound):
            service.assign_role(target.user.id, "Admin", tenant_id=acme.id)

    def test_deactivate_revokes_refresh_tokens(
        self, service: AuthService, store: AuthStore, tokens: TokenService, session_cache: SessionCache
    ) -> None:
        result = _register(service)
        updated = service.set_user_active(result.user.id, False, ip="10.0.0.7")

        assert updated.is_active is False
        assert store.get_refresh_token(tokens.digest(result.refresh_token)).is_revoked
        assert session_cache.get(result.user.id) is None
        with pytest.raises(Unauthorized):
            service.login("alice@acme.com", PASSWORD, "acme.com", ip="10.0.0.2")

        assert service.set_user_active(result.user.id, True, ip="10.0.0.7").is_active
        assert service.login("alice@acme.com", PASSWORD, "acme.com", ip="10.0.0.2").access_token


# ---------------------------------------------------------------------------
# Concurrency
#
# A file-backed SQLite database: writers queue on the database lock, so the
# conditional UPDATE and the tenant unique constraint decide the outcome.
# The shared-memory URI used elsewhere reports table-lock contention as a
# TransientStoreFailure instead of waiting.
# ---------------------------------------------------------------------------


@pytest.fixture
def file_service(tmp_path, settings):
    file_store = AuthStore(db_url=f"sqlite:///{tmp_path / 'auth.db'}")
    yield AuthService(file_store, TokenService(settings, file_store), settings)
    file_store.close()


def _race(*calls):
    """Run each call on its own thread, released together. Returns "ok" or the exception class name."""
    barrier = threading.Barrier(len(calls))

    def run(call):
        barrier.wait()
        try:
            call()
        except AuthError as exc:
            return type(exc).__name__
        return "ok"

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return [f.result() for f in [pool.submit(run, call) for call in calls]]


class TestConcurrency:
    def test_concurrent_rotation_has_one_winner(self, file_service: AuthService) -> None:
        for i in range(5):
            first = _register(file_service, email=f"user{i}@acme.com")
            outcomes = _race(
                lambda: file_service.refresh_token(first.refresh_token, ip="10.0.0.3"),
                lambda: file_service.refresh_token(first.refresh_token, ip="10.0.0.4"),
            )
            assert sorted(outcomes) == ["Unauthorized", "ok"]

    def test_concurrent_first_registrations_share_one_tenant(self, file_service: AuthService) -> None:
        outcomes = _race(
            lambda: _register(file_service, email="alice@newco.io", domain="newco.io"),
            lambda: _register(file_service, email="bob@newco.io", domain="NewCo.io"),
        )
        assert outcomes == ["ok", "ok"]
        assert _table_counts(file_service.store)["tenants"] == 1
        tenant = file_service.store.get_tenant_by_domain("newco.io")
        emails = {u.email for u in file_service.store.find_users_by_email("alice@newco.io")}
        emails |= {u.email for u in file_service.store.find_users_by_email("bob@newco.io")}
        assert emails == {"alice@newco.io", "bob@newco.io"}
        assert all(
            u.tenant_id == tenant.id
            for email in emails
            for u in file_service.store.find_users_by_email(email)
        )
