"""Unit tests for auth service.

Tests for:
- Password hashing and verification
- Unified login across both namespaces
- Session-bound authentication and refresh
- Password change
- Identity provisioning
"""

from datetime import datetime, timezone

import pytest

from gatehide.service.auth import AuthService, BasicAuth, SessionAwareAuth
from gatehide.service.credentials import PASSWORD_ALGO
from gatehide.service.errors import (
    EmailConflictError,
    IncorrectPasswordError,
    InvalidCredentialsError,
    InvalidTokenError,
    MalformedTokenError,
    PasswordMismatchError,
    WeakPasswordError,
)
from gatehide.storage.models import Namespace

from tests.conftest import ADMIN_PASSWORD, USER_PASSWORD


class TestPasswordHashing:
    """Tests for password hashing."""

    def test_hash_is_argon2id_and_salted(self, auth_service):
        hash1, algo = auth_service.credentials.hash_password("TestPassword123!")
        hash2, _ = auth_service.credentials.hash_password("TestPassword123!")

        assert algo == PASSWORD_ALGO
        assert hash1.startswith("$argon2id$")
        assert hash1 != hash2

    def test_stored_password_is_never_plaintext(self, memory_store, test_user):
        stored_hash, _ = memory_store.get_password_record(Namespace.USER, test_user.id)
        assert USER_PASSWORD not in stored_hash

    def test_verify_password_rejects_unknown_algo(self, memory_store, auth_service, test_user):
        stored_hash, _ = memory_store.get_password_record(Namespace.USER, test_user.id)
        memory_store.save_password(Namespace.USER, test_user.id, stored_hash, "md5")
        assert not auth_service.credentials.verify_password(
            Namespace.USER, test_user.id, USER_PASSWORD
        )


class TestCapabilities:
    def test_service_satisfies_both_interfaces(self, auth_service):
        basic: BasicAuth = auth_service
        aware: SessionAwareAuth = auth_service
        for name in ("login", "validate_token", "refresh_token"):
            assert callable(getattr(basic, name))
        for name in ("login_with_session", "authenticate", "list_sessions", "revoke_all_sessions"):
            assert callable(getattr(aware, name))


class TestLogin:
    """Tests for unified login."""

    async def test_user_login_decodes_to_user(self, auth_service, test_user):
        result = await auth_service.login("player@example.com", USER_PASSWORD)

        assert result.namespace is Namespace.USER
        assert result.identity.id == test_user.id
        claims = await auth_service.validate_token(result.token)
        assert claims.identity_id == test_user.id
        assert claims.namespace is Namespace.USER
        assert claims.expires_at == result.expires_at

    async def test_admin_login_decodes_to_admin(self, auth_service, test_admin):
        result = await auth_service.login("ops@example.com", ADMIN_PASSWORD)

        assert result.namespace is Namespace.ADMIN
        claims = await auth_service.validate_token(result.token)
        assert claims.identity_id == test_admin.id
        assert claims.namespace is Namespace.ADMIN

    async def test_ids_are_scoped_by_namespace(self, auth_service, test_user, test_admin):
        # Both tables start their own sequence at 1
        assert test_user.id == test_admin.id
        user_claims = await auth_service.validate_token(
            (await auth_service.login("player@example.com", USER_PASSWORD)).token
        )
        admin_claims = await auth_service.validate_token(
            (await auth_service.login("ops@example.com", ADMIN_PASSWORD)).token
        )
        assert user_claims.namespace != admin_claims.namespace

    async def test_email_is_case_insensitive(self, auth_service, test_user):
        result = await auth_service.login("  Player@Example.COM ", USER_PASSWORD)
        assert result.identity.id == test_user.id

    async def test_wrong_password_fails(self, auth_service, test_user):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("player@example.com", "not-the-password")

    async def test_unknown_email_fails(self, auth_service):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("ghost@example.com", "whatever123")

    async def test_admin_password_does_not_open_user_account(
        self, auth_service, test_user, test_admin
    ):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("player@example.com", ADMIN_PASSWORD)

    async def test_login_records_last_login(self, auth_service, memory_store, test_user):
        assert test_user.last_login_at is None
        await auth_service.login("player@example.com", USER_PASSWORD)
        assert memory_store.get_identity(Namespace.USER, test_user.id).last_login_at is not None

    async def test_last_login_failure_does_not_block_login(
        self, auth_service, memory_store, test_user, monkeypatch
    ):
        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(memory_store, "update_last_login", broken)
        result = await auth_service.login("player@example.com", USER_PASSWORD)
        assert result.identity.id == test_user.id

    async def test_remember_me_extends_expiry(self, auth_service, test_user):
        short = await auth_service.login("player@example.com", USER_PASSWORD)
        long = await auth_service.login("player@example.com", USER_PASSWORD, remember=True)
        assert long.expires_at > short.expires_at

    async def test_basic_login_creates_no_session(self, auth_service, memory_store, test_user):
        await auth_service.login("player@example.com", USER_PASSWORD)
        assert memory_store.sessions == {}


class TestSessionAwareLogin:
    """Tests for login bound to a session row."""

    async def test_session_expiry_matches_token(self, auth_service, memory_store, test_user):
        result = await auth_service.login_with_session(
            "player@example.com",
            USER_PASSWORD,
            device_info="Pixel 8",
            ip_address="203.0.113.5",
            user_agent="GateHideApp/1.0",
        )
        sess = memory_store.get_session(result.session_id)

        assert sess.session_token == result.token
        assert sess.expires_at == result.expires_at
        assert sess.device_info == "Pixel 8"
        assert sess.ip_address == "203.0.113.5"
        assert sess.user_agent == "GateHideApp/1.0"
        assert sess.is_active

    async def test_authenticate_returns_typed_context(self, auth_service, test_user):
        result = await auth_service.login_with_session("player@example.com", USER_PASSWORD)
        ctx = await auth_service.authenticate(f"Bearer {result.token}")

        assert ctx.identity_id == test_user.id
        assert ctx.namespace is Namespace.USER
        assert ctx.token == result.token
        assert ctx.session_id == result.session_id
        assert not ctx.is_admin

    async def test_authenticate_touches_session(
        self, auth_service, memory_store, test_user, monkeypatch
    ):
        result = await auth_service.login_with_session("player@example.com", USER_PASSWORD)
        stamp = datetime(2030, 1, 1, tzinfo=timezone.utc)
        monkeypatch.setattr(auth_service.sessions, "_now", lambda: stamp)
        await auth_service.authenticate(f"Bearer {result.token}")
        assert memory_store.get_session(result.session_id).last_activity_at == stamp

    async def test_authenticate_requires_bearer(self, auth_service):
        with pytest.raises(MalformedTokenError):
            await auth_service.authenticate(None)
        with pytest.raises(MalformedTokenError):
            await auth_service.authenticate("Basic dXNlcjpwYXNz")

    async def test_authenticate_rejects_token_without_session(self, auth_service, test_user):
        result = await auth_service.login("player@example.com", USER_PASSWORD)
        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(f"Bearer {result.token}")

    async def test_authenticate_rejects_revoked_session(self, auth_service, test_user):
        result = await auth_service.login_with_session("player@example.com", USER_PASSWORD)
        ctx = await auth_service.authenticate(f"Bearer {result.token}")
        await auth_service.logout(ctx)
        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(f"Bearer {result.token}")

    async def test_refresh_rotates_session(self, auth_service, memory_store, test_user):
        result = await auth_service.login_with_session("player@example.com", USER_PASSWORD)
        refreshed = await auth_service.refresh_token(result.token, remember=True)

        sess = memory_store.get_session(result.session_id)
        assert refreshed.token != result.token
        assert sess.session_token == refreshed.token
        assert sess.expires_at == refreshed.expires_at
        ctx = await auth_service.authenticate(f"Bearer {refreshed.token}")
        assert ctx.session_id == result.session_id
        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(f"Bearer {result.token}")

    async def test_superseded_token_cannot_refresh(self, auth_service, test_user):
        result = await auth_service.login_with_session("player.com", USER_PASSWORD)
        await auth_service.refresh_token(result.token)
        with pytest.raises(InvalidTokenError):
            await auth_service.refresh_token(result.token)

    async def test_superseded_token_stays_dead_after_revoke_all(self, auth_service, test_user):
        result = await auth_service.login_with_session("player.com", USER_PASSWORD)
        refreshed = await auth_service.refresh_token(result.token)
        ctx = await auth_service.authenticate(f"Bearer {refreshed.token}")
        await auth_service.revoke_all_sessions(ctx)

        for token in (result.token, refreshed.token):
            with pytest.raises(InvalidTokenError):
                await auth_service.refresh_token(token)

    async def test_refresh_of_revoked_session_fails(self, auth_service, test_user):
        result = await auth_service.login_with_session("player@example.com", USER_PASSWORD)
        ctx = await auth_service.authenticate(f"Bearer {result.token}")
        await auth_service.revoke_all_sessions(ctx)
        with pytest.raises(InvalidTokenError):
            await auth_service.refresh_token(result.token)

    async def test_refresh_of_sessionless_token(self, auth_service, test_user):
        result = await auth_service.login("player@example.com", USER_PASSWORD)
        refreshed = await auth_service.refresh_token(result.token)
        assert refreshed.token != result.token


class TestChangePassword:
    """Tests for authenticated password change."""

    async def _ctx(self, auth_service):
        result = await auth_service.login_with_session("player@example.com", USER_PASSWORD)
        return await auth_service.authenticate(f"Bearer {result.token}")

    async def test_change_password_flow(self, auth_service, notifier, test_user):
        ctx = await self._ctx(auth_service)
        other = await self._ctx(auth_service)

        revoked = await auth_service.change_password(
            ctx, USER_PASSWORD, "BrandNew456!", "BrandNew456!"
        )

        assert revoked == 1
        await auth_service.login("player@example.com", "BrandNew456!")
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("player@example.com", USER_PASSWORD)
        # Current device stays signed in, the other one does not
        await auth_service.authenticate(f"Bearer {ctx.token}")
        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(f"Bearer {other.token}")
        assert "password was changed" in notifier.last_for("player@example.com")["subject"]

    async def test_mismatch(self, auth_service, test_user):
        ctx = await self._ctx(auth_service)
        with pytest.raises(PasswordMismatchError):
            await auth_service.change_password(ctx, USER_PASSWORD, "BrandNew456!", "Different1!")

    async def test_too_short(self, auth_service, test_user):
        ctx = await self._ctx(auth_service)
        with pytest.raises(WeakPasswordError) as exc:
            await auth_service.change_password(ctx, USER_PASSWORD, "abc", "abc")
        assert exc.value.detail == {"min_length": 6}

    async def test_wrong_current_password(self, auth_service, test_user):
        ctx = await self._ctx(auth_service)
        with pytest.raises(IncorrectPasswordError):
            await auth_service.change_password(ctx, "wrong-pass", "BrandNew456!", "BrandNew456!")

    async def test_notification_failure_is_swallowed(self, auth_service, notifier, test_user):
        ctx = await self._ctx(auth_service)
        notifier.fail = True
        await auth_service.change_password(ctx, USER_PASSWORD, "BrandNew456!", "BrandNew456!")
        await auth_service.login("player@example.com", "BrandNew456!")


class TestIdentityProvisioning:
    """Tests for create_identity and email lookup."""

    async def test_duplicate_email_across_namespaces(self, auth_service, test_user):
        with pytest.raises(EmailConflictError):
            await auth_service.create_identity(
                Namespace.ADMIN, "player@example.com", "Shadow", "Another123!"
            )

    async def test_weak_password_rejected(self, auth_service):
        with pytest.raises(WeakPasswordError):
            await auth_service.create_identity(Namespace.USER, "new@example.com", "New", "123")

    async def test_check_email_exists(self, auth_service, test_user, test_admin):
        assert await auth_service.check_email_exists("player@example.com")
        assert await auth_service.check_email_exists("OPS@example.com")
        assert not await auth_service.check_email_exists("nobody@example.com")

    async def test_get_identity(self, auth_service, test_admin):
        result = await auth_service.login_with_session("ops@example.com", ADMIN_PASSWORD)
        ctx = await auth_service.authenticate(f"Bearer {result.token}")
        identity = await auth_service.get_identity(ctx)
        assert identity.name == "Ops Admin"
        assert ctx.is_admin


def test_build_wires_shared_collaborators(memory_store, settings, notifier):
    service = AuthService.build(memory_store, settings, notifier)
    assert service.password_reset.credentials is service.credentials
    assert service.email_change.credentials is service.credentials
    assert service.password_reset.notifier is notifier
    assert service.sessions.store is memory_store
