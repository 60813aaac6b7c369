"""Access guard: ordered checks on bearer tokens and the session heartbeat."""

from datetime import timedelta

import pytest

from tenantguard.config import Settings
from tenantguard.service.errors import (
    AccountDeactivatedError,
    ForbiddenError,
    InvalidTokenError,
    MFAIncompleteError,
    PasswordChangedError,
    SessionRevokedError,
    TenantInactiveError,
    TokenExpiredError,
    UnauthenticatedError,
    UserGoneError,
)
from tenantguard.service.guard import AccessGuard, AuthContext, bearer_token, require_roles
from tenantguard.service.tokens import TokenService, token_digest
from tenantguard.storage.memory import MemoryStore
from tenantguard.storage.models import Role, utcnow


class FlakyStore(MemoryStore):
    def touch_session(self, session_id, at):
        raise RuntimeError("database went away")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="guard-access-secret",
        jwt_refresh_secret="guard-refresh-secret",
        shared_fs_root=str(tmp_path),
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="guard-mfa-key")


@pytest.fixture
def tokens(settings):
    return TokenService(settings)


@pytest.fixture
def guard(store, tokens):
    return AccessGuard(store, tokens)


@pytest.fixture
def tenant(store):
    return store.create_tenant("Acme Retail")


@pytest.fixture
def user(store, tenant):
    return store.create_user(
        "Casey", "casey@example.com", "hash", role=Role.ADMIN, tenant_id=tenant.id
    )


def _bearer(store, tokens, user):
    session = store.create_session(user.id, "198.51.100.4", "pytest")
    pair = tokens.issue_token_pair(store.get_user(user.id), session_id=session.id)
    return f"Bearer {pair.access_token}", session


class TestBearerParsing:
    def test_bearer_token_parsing(self):
        assert bearer_token("Bearer abc") == "abc"
        assert bearer_token("bearer  abc ") == "abc"
        assert bearer_token("Basic abc") is None
        assert bearer_token("Bearer ") is None
        assert bearer_token(None) is None


class TestAuthenticate:
    async def test_valid_token_yields_context_and_touches_session(
        self, guard, store, tokens, user, tenant
    ):
        header, session = _bearer(store, tokens, user)
        before = store.get_session(session.id).last_active

        ctx = await guard.authenticate(header)
        await guard.drain()

        assert ctx.user_id == user.id
        assert ctx.role == Role.ADMIN
        assert ctx.tenant_id == tenant.id
        assert ctx.session_id == session.id
        assert store.get_session(session.id).last_active >= before

    async def test_missing_header(self, guard):
        with pytest.raises(UnauthenticatedError):
            await guard.authenticate(None)

    async def test_blacklisted_token_is_checked_first(self, guard, store, tokens, user):
        header, _ = _bearer(store, tokens, user)
        store.add_blacklist_entry(
            token_digest(header.split(" ", 1)[1]), utcnow() + timedelta(minutes=15)
        )
        store.soft_delete_user(user.id)

        with pytest.raises(SessionRevokedError):
            await guard.authenticate(header)

    async def test_forged_token(self, guard):
        with pytest.raises(InvalidTokenError):
            await guard.authenticate("Bearer a.b.c")

    async def test_expired_token(self, store, settings, user):
        past = TokenService(settings, clock=lambda: utcnow() - timedelta(hours=1))
        session = store.create_session(user.id)
        pair = past.issue_token_pair(user, session_id=session.id)

        with pytest.raises(TokenExpiredError):
            await AccessGuard(store, TokenService(settings)).authenticate(
                f"Bearer {pair.access_token}"
            )

    async def test_mfa_step_token_is_not_access(self, guard, tokens, user):
        with pytest.raises(MFAIncompleteError):
            await guard.authenticate(f"Bearer {tokens.issue_mfa_token(user)}")

    async def test_deleted_user(self, guard, store, tokens, user):
        header, _ = _bearer(store, tokens, user)
        store.soft_delete_user(user.id)

        with pytest.raises(UserGoneError):
            await guard.authenticate(header)

    async def test_generation_bump_revokes(self, guard, store, tokens, user):
        header, _ = _bearer(store, tokens, user)
        store.bump_token_generation(user.id)

        with pytest.raises(SessionRevokedError):
            await guard.authenticate(header)

    async def test_deactivated_user(self, guard, store, tokens, user):
        header, _ = _bearer(store, tokens, user)
        store.update_user(user.id, {"is_active": False})

        with pytest.raises(AccountDeactivatedError):
            await guard.authenticate(header)

    async def test_inactive_tenant(self, guard, store, tokens, user, tenant):
        header, _ = _bearer(store, tokens, user)
        store.set_tenant_active(tenant.id, False)

        with pytest.raises(TenantInactiveError):
            await guard.authenticate(header)

    async def test_password_changed_after_issuance(self, guard, store, tokens, user):
        header, _ = _bearer(store, tokens, user)
        # Same generation, so only the freshness check can reject it
        store.update_password(
            user.id, "new-hash", utcnow() + timedelta(seconds=5), revoke_tokens=False
        )

        with pytest.raises(PasswordChangedError):
            await guard.authenticate(header)

    async def test_heartbeat_failure_is_swallowed(self, tmp_path, tokens):
        flaky = FlakyStore(fs_root=str(tmp_path / "flaky"), mfa_encryption_key="k")
        user = flaky.create_user("Sam", "sam@example.com", "hash", role=Role.SUPER_ADMIN)
        header, _ = _bearer(flaky, tokens, user)
        guard = AccessGuard(flaky, tokens)

        ctx = await guard.authenticate(header)
        await guard.drain()

        assert ctx.user_id == user.id


class TestRoles:
    def test_require_roles(self):
        ctx = AuthContext(user_id="u", role=Role.CASHIER, tenant_id="t")

        assert require_roles(ctx, Role.CASHIER, Role.ADMIN) is ctx
        with pytest.raises(ForbiddenError):
            require_roles(ctx, Role.SUPER_ADMIN)
