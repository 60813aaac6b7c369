"""Unit tests for the authentication service.

Covers login (with and without MFA), MFA activation and recovery codes,
refresh rotation, the generation kill switch, logout and the password
lifecycle, all against the memory store.
"""

import time
from datetime import timedelta

import pytest

from tenantguard.config import Settings
from tenantguard.service import mfa
from tenantguard.service.auth import AuthService, hash_reset_token
from tenantguard.service.errors import (
    AccountDeactivatedError,
    ConflictError,
    DeliveryError,
    IncorrectPasswordError,
    InvalidCredentialsError,
    InvalidMFACodeError,
    InvalidOrExpiredResetTokenError,
    InvalidRecoveryCodeError,
    InvalidRefreshTokenError,
    NoActiveSessionError,
    SessionHijackSuspectedError,
    SessionRevokedError,
    TenantInactiveError,
    ValidationError,
)
from tenantguard.service.guard import AuthContext, RequestMeta
from tenantguard.service.tokens import TokenService, token_digest
from tenantguard.storage.memory import MemoryStore
from tenantguard.storage.models import AuditAction, Role, utcnow

PASSWORD = "Correct-horse-9"
META = RequestMeta(ip_address="203.0.113.7", user_agent="pytest")


class RecordingEmail:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.resets = []
        self.welcomes = []

    def send_password_reset(self, to_email, token):
        if self.fail:
            raise DeliveryError("There was an error sending the email. Try again later.")
        self.resets.append((to_email, token))

    def send_welcome(self, to_email, name):
        if self.fail:
            raise DeliveryError("There was an error sending the email. Try again later.")
        self.welcomes.append((to_email, name))


class AuditlessStore(MemoryStore):
    def append_audit_record(self, record):
        raise RuntimeError("audit table unavailable")


class RacingRecoveryStore(MemoryStore):
    """Another request consumes a different code just before ours lands."""

    def consume_recovery_code(self, user_id, code_hash):
        user = self.get_user(user_id)
        other = next(h for h in user.mfa_recovery_codes if h != code_hash)
        super().consume_recovery_code(user_id, other)
        return super().consume_recovery_code(user_id, code_hash)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="unit-access-secret",
        jwt_refresh_secret="unit-refresh-secret",
        shared_fs_root=str(tmp_path),
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-mfa-key")


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def auth_service(memory_store, settings, email):
    return AuthService(store=memory_store, cache=None, settings=settings, email=email)


@pytest.fixture
def tenant(memory_store):
    return memory_store.create_tenant("Acme Retail")


@pytest.fixture
def cashier(memory_store, auth_service, tenant):
    return memory_store.create_user(
        "Casey",
        "casey@example.com",
        auth_service.hash_password(PASSWORD),
        role=Role.CASHIER,
        tenant_id=tenant.id,
    )


def _actions(store, user_id=None):
    return [r.action for r in store.list_audit_records(user_id=user_id)]


async def _enable_mfa(auth_service, user_id):
    setup = await auth_service.setup_mfa(user_id)
    code = mfa.generate_totp(setup.secret, time.time())
    return setup.secret, await auth_service.activate_mfa(user_id, code)


class TestLogin:
    async def test_login_embeds_current_generation(self, auth_service, memory_store, cashier):
        memory_store.bump_token_generation(cashier.id)

        result = await auth_service.login("Casey@Example.com", PASSWORD, META)

        claims = auth_service.tokens.verify_access(result.tokens.access_token)
        assert claims["tgen"] == 1
        assert claims["sid"] == result.session.id
        stored = memory_store.get_user(cashier.id)
        assert stored.refresh_token == result.tokens.refresh_token
        assert AuditAction.LOGIN_SUCCESS in _actions(memory_store, cashier.id)

    async def test_wrong_password_is_generic_and_audited_without_user(
        self, auth_service, memory_store, cashier
    ):
        with pytest.raises(InvalidCredentialsError, match="Invalid email or password"):
            await auth_service.login(cashier.email, "Wrong-password-1", META)
        with pytest.raises(InvalidCredentialsError, match="Invalid email or password"):
            await auth_service.login("nobody@example.com", PASSWORD, META)

        failed = [
            r for r in memory_store.list_audit_records() if r.action == AuditAction.LOGIN_FAILED
        ]
        assert len(failed) == 2
        assert all(r.user_id is None for r in failed)

    async def test_deactivated_account_is_rejected(self, auth_service, memory_store, cashier):
        memory_store.update_user(cashier.id, {"is_active": False})

        with pytest.raises(AccountDeactivatedError):
            await auth_service.login(cashier.email, PASSWORD, META)
        assert AuditAction.LOGIN_ATTEMPT_DEACTIVATED in _actions(memory_store, cashier.id)

    async def test_inactive_tenant_is_rejected(
        self, auth_service, memory_store, cashier, tenant
    ):
        memory_store.set_tenant_active(tenant.id, False)

        with pytest.raises(TenantInactiveError):
            await auth_service.login(cashier.email, PASSWORD, META)

    async def test_mfa_login_returns_step_token_only(self, auth_service, memory_store, cashier):
        await _enable_mfa(auth_service, cashier.id)

        result = await auth_service.login(cashier.email, PASSWORD, META)

        assert result.mfa_required is True
        assert result.tokens is None
        assert result.session is None
        assert auth_service.tokens.verify_mfa(result.mfa_token)["sub"] == cashier.id
        assert memory_store.list_sessions(cashier.id) == []


class TestMfa:
    async def test_activate_requires_pending_secret(self, auth_service, cashier):
        with pytest.raises(ValidationError, match="MFA setup not initiated"):
            await auth_service.activate_mfa(cashier.id, "123456")

    async def test_activate_rejects_bad_code(self, auth_service, memory_store, cashier):
        await auth_service.setup_mfa(cashier.id)

        with pytest.raises(InvalidMFACodeError):
            await auth_service.activate_mfa(cashier.id, "000000")
        assert memory_store.get_user(cashier.id).mfa_enabled is False

    async def test_setup_rejected_when_already_enabled(self, auth_service, cashier):
        await _enable_mfa(auth_service, cashier.id)

        with pytest.raises(ConflictError):
            await auth_service.setup_mfa(cashier.id)

    async def test_activation_stores_hashed_recovery_codes(
        self, auth_service, memory_store, cashier
    ):
        _, codes = await _enable_mfa(auth_service, cashier.id)

        stored = memory_store.get_user(cashier.id)
        assert stored.mfa_enabled is True
        assert len(codes) == 10
        assert len(stored.mfa_recovery_codes) == 10
        assert not set(codes) & set(stored.mfa_recovery_codes)

    async def test_verify_login_with_totp(self, auth_service, memory_store, cashier):
        secret, _ = await _enable_mfa(auth_service, cashier.id)
        step = await auth_service.login(cashier.email, PASSWORD, META)

        result = await auth_service.verify_mfa_login(
            step.mfa_token, mfa.generate_totp(secret, time.time()), META
        )

        assert result.tokens is not None
        assert memory_store.get_session(result.session.id) is not None
        assert AuditAction.MFA_SUCCESS in _actions(memory_store, cashier.id)

    async def test_verify_login_rejects_wrong_code(self, auth_service, memory_store, cashier):
        await _enable_mfa(auth_service, cashier.id)
        step = await auth_service.login(cashier.email, PASSWORD, META)

        with pytest.raises(InvalidMFACodeError):
            await auth_service.verify_mfa_login(step.mfa_token, "000000", META)
        assert AuditAction.MFA_FAILED in _actions(memory_store, cashier.id)

    async def test_recovery_code_is_single_use(self, auth_service, memory_store, cashier):
        _, codes = await _enable_mfa(auth_service, cashier.id)
        step = await auth_service.login(cashier.email, PASSWORD, META)

        result = await auth_service.verify_recovery_login(
            step.mfa_token, f" {codes[0].lower()} ", META
        )
        assert result.recovery_codes_remaining == 9
        assert len(memory_store.get_user(cashier.id).mfa_recovery_codes) == 9

        with pytest.raises(InvalidRecoveryCodeError):
            await auth_service.verify_recovery_login(step.mfa_token, codes[0], META)
        assert AuditAction.RECOVERY_CODE_FAILED in _actions(memory_store, cashier.id)

    async def test_disable_requires_password(self, auth_service, memory_store, cashier):
        await _enable_mfa(auth_service, cashier.id)

        with pytest.raises(IncorrectPasswordError):
            await auth_service.disable_mfa(cashier.id, "Wrong-password-1")
        await auth_service.disable_mfa(cashier.id, PASSWORD)

        stored = memory_store.get_user(cashier.id)
        assert stored.mfa_enabled is False
        assert stored.mfa_secret is None
        assert stored.mfa_recovery_codes == []

    @pytest.mark.parametrize("blocked", ["deactivated", "tenant_inactive"])
    async def test_recovery_login_keeps_code_for_rejected_account(
        self, auth_service, memory_store, cashier, tenant, blocked
    ):
        _, codes = await _enable_mfa(auth_service, cashier.id)
        step = await auth_service.login(cashier.email, PASSWORD, META)
        if blocked == "deactivated":
            memory_store.update_user(cashier.id, {"is_active": False})
            expected = AccountDeactivatedError
        else:
            memory_store.set_tenant_active(tenant.id, False)
            expected = TenantInactiveError

        with pytest.raises(expected):
            await auth_service.verify_recovery_login(step.mfa_token, codes[0], META)

        assert len(memory_store.get_user(cashier.id).mfa_recovery_codes) == 10

    async def test_recovery_remaining_reflects_concurrent_use(
        self, tmp_path, settings, email
    ):
        store = RacingRecoveryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-mfa-key")
        service = AuthService(store=store, cache=None, settings=settings, email=email)
        tenant = store.create_tenant("Acme Retail")
        user = store.create_user(
            "Casey",
            "casey@example.com",
            service.hash_password(PASSWORD),
            tenant_id=tenant.id,
        )
        _, codes = await _enable_mfa(service, user.id)
        step = await service.login(user.email, PASSWORD, META)

        result = await service.verify_recovery_login(step.mfa_token, codes[0], META)

        assert result.recovery_codes_remaining == 8
        assert len(store.get_user(user.id).mfa_recovery_codes) == 8


class TestRefresh:
    async def test_rotation_burns_previous_token(self, auth_service, cashier):
        first = await auth_service.login(cashier.email, PASSWORD, META)

        rotated = await auth_service.refresh(first.tokens.refresh_token, META)
        assert rotated.refresh_token != first.tokens.refresh_token
        claims = auth_service.tokens.verify_refresh(rotated.refresh_token)
        assert claims["sid"] == first.session.id

        with pytest.raises(SessionHijackSuspectedError):
            await auth_service.refresh(first.tokens.refresh_token, META)

    async def test_missing_or_garbage_token(self, auth_service):
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(None)
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh("garbage")

    async def test_revoke_all_kills_outstanding_refresh(self, auth_service, memory_store, cashier):
        login = await auth_service.login(cashier.email, PASSWORD, META)

        revoked = await auth_service.revoke_all_sessions(cashier.id, META)

        assert revoked == 1
        with pytest.raises(SessionRevokedError):
            await auth_service.refresh(login.tokens.refresh_token, META)
        assert memory_store.get_user(cashier.id).refresh_token is None

    async def test_refresh_rejected_after_session_revoked(self, auth_service, cashier):
        login = await auth_service.login(cashier.email, PASSWORD, META)
        await auth_service.revoke_session(cashier.id, login.session.id, META)

        with pytest.raises(SessionRevokedError):
            await auth_service.refresh(login.tokens.refresh_token, META)


class TestLogout:
    async def test_logout_blacklists_and_destroys_session(
        self, auth_service, memory_store, cashier
    ):
        login = await auth_service.login(cashier.email, PASSWORD, META)

        await auth_service.logout(login.tokens.access_token, META)

        assert memory_store.is_blacklisted(token_digest(login.tokens.access_token))
        assert memory_store.get_session(login.session.id) is None
        assert memory_store.get_user(cashier.id).refresh_token is None
        assert AuditAction.USER_LOGOUT in _actions(memory_store, cashier.id)

    async def test_logout_without_token(self, auth_service):
        with pytest.raises(NoActiveSessionError):
            await auth_service.logout(None, META)

    async def test_logout_accepts_expired_token(
        self, auth_service, memory_store, settings, cashier
    ):
        session = memory_store.create_session(cashier.id, META.ip_address, META.user_agent)
        issued_earlier = TokenService(settings, clock=lambda: utcnow() - timedelta(hours=2))
        pair = issued_earlier.issue_token_pair(cashier, session_id=session.id)

        await auth_service.logout(pair.access_token, META)

        digest = token_digest(pair.access_token)
        assert memory_store.is_blacklisted(digest)
        assert memory_store.blacklist[digest].expires_at == pair.access_expires_at.replace(
            microsecond=0
        )
        assert memory_store.get_session(session.id) is None

    async def test_logout_falls_back_to_context_user(
        self, auth_service, memory_store, settings, cashier
    ):
        login = await auth_service.login(cashier.email, PASSWORD, META)
        claims = auth_service.tokens.verify_access(login.tokens.access_token)
        claims.pop("sub")
        anonymous = auth_service.tokens._encode(claims, settings.jwt_secret)

        await auth_service.logout(anonymous, META, fallback_user_id=cashier.id)

        assert memory_store.get_user(cashier.id).refresh_token is None
        logout_records = [
            r
            for r in memory_store.list_audit_records()
            if r.action == AuditAction.USER_LOGOUT
        ]
        assert logout_records[0].user_id == cashier.id


class TestPasswords:
    async def test_change_password_bumps_generation_and_reissues(
        self, auth_service, memory_store, cashier
    ):
        old = await auth_service.login(cashier.email, PASSWORD, META)

        pair = await auth_service.change_password(cashier.id, PASSWORD, "New-password-22", META)

        stored = memory_store.get_user(cashier.id)
        assert stored.token_generation == 1
        assert stored.refresh_token == pair.refresh_token
        assert memory_store.get_session(old.session.id) is None
        assert auth_service.tokens.verify_access(pair.access_token)["tgen"] == 1
        with pytest.raises(SessionRevokedError):
            await auth_service.refresh(old.tokens.refresh_token, META)

    async def test_change_password_wrong_current(self, auth_service, memory_store, cashier):
        with pytest.raises(IncorrectPasswordError):
            await auth_service.change_password(cashier.id, "Nope-nope-1", "New-password-22")
        assert AuditAction.PASSWORD_CHANGE_FAILED in _actions(memory_store, cashier.id)

    async def test_forgot_password_unknown_email_is_silent(self, auth_service, memory_store, email):
        await auth_service.forgot_password("ghost@example.com", META)

        assert email.resets == []
        assert AuditAction.PASSWORD_RESET_REQUEST_NONEXISTENT in _actions(memory_store)

    async def test_reset_flow(self, auth_service, memory_store, email, cashier):
        await auth_service.forgot_password(cashier.email, META)
        (_, token), = email.resets
        stored = memory_store.get_user(cashier.id)
        assert stored.password_reset_hash == hash_reset_token(token)

        await auth_service.reset_password(token, "Brand-new-pass-3", META)

        stored = memory_store.get_user(cashier.id)
        assert stored.password_reset_hash is None
        assert stored.token_generation == 1
        result = await auth_service.login(cashier.email, "Brand-new-pass-3", META)
        assert result.tokens is not None
        with pytest.raises(InvalidOrExpiredResetTokenError):
            await auth_service.reset_password(token, "Another-pass-4", META)

    async def test_delivery_failure_rolls_back_reset_token(
        self, memory_store, settings, cashier
    ):
        service = AuthService(
            store=memory_store, cache=None, settings=settings, email=RecordingEmail(fail=True)
        )

        with pytest.raises(DeliveryError):
            await service.forgot_password(cashier.email, META)

        stored = memory_store.get_user(cashier.id)
        assert stored.password_reset_hash is None
        assert stored.password_reset_expires_at is None
        assert AuditAction.PASSWORD_RESET_EMAIL_FAILED in _actions(memory_store, cashier.id)


class TestBestEffortAudit:
    async def test_audit_failures_never_fail_the_operation(self, tmp_path, settings, email):
        store = AuditlessStore(fs_root=str(tmp_path), mfa_encryption_key="unit-mfa-key")
        service = AuthService(store=store, cache=None, settings=settings, email=email)
        user = store.create_user(
            "Root", "root@example.com", service.hash_password(PASSWORD), role=Role.SUPER_ADMIN
        )

        login = await service.login(user.email, PASSWORD, META)
        assert store.get_session(login.session.id) is not None

        pair = await service.change_password(user.id, PASSWORD, "New-password-22", META)
        assert store.get_user(user.id).token_generation == 1

        await service.logout(pair.access_token, META)
        assert store.is_blacklisted(token_digest(pair.access_token))
        assert store.get_user(user.id).refresh_token is None
        assert store.list_audit_records() == []

    async def test_failed_login_still_reports_credentials(self, tmp_path, settings, email):
        store = AuditlessStore(fs_root=str(tmp_path), mfa_encryption_key="unit-mfa-key")
        service = AuthService(store=store, cache=None, settings=settings, email=email)

        with pytest.raises(InvalidCredentialsError):
            await service.login("ghost@example.com", PASSWORD, META)


class TestProfileUpdates:
    @pytest.fixture
    def root_ctx(self, memory_store, auth_service):
        root = memory_store.create_user(
            "Root", "root@example.com", auth_service.hash_password(PASSWORD), role=Role.SUPER_ADMIN
        )
        return AuthContext(user_id=root.id, role=Role.SUPER_ADMIN, tenant_id=None)

    @pytest.mark.parametrize("field", ["name", "email"])
    async def test_update_me_rejects_null_required_field(
        self, auth_service, memory_store, cashier, field
    ):
        with pytest.raises(ValidationError, match=field):
            await auth_service.update_me(cashier.id, {field: None}, META)

        stored = memory_store.get_user(cashier.id)
        assert stored.email == "casey@example.com"
        assert stored.name == "Casey"

    async def test_update_me_may_clear_phone_number(self, auth_service, memory_store, cashier):
        memory_store.update_user(cashier.id, {"phone_number": "+15550100"})

        updated = await auth_service.update_me(cashier.id, {"phone_number": None}, META)

        assert updated.phone_number is None

    @pytest.mark.parametrize("field", ["role", "is_active", "name", "email"])
    async def test_admin_update_rejects_null_required_field(
        self, auth_service, memory_store, cashier, root_ctx, field
    ):
        with pytest.raises(ValidationError):
            await auth_service.admin_update_user(root_ctx, cashier.id, {field: None}, META)

        stored = memory_store.get_user(cashier.id)
        assert stored.role == Role.CASHIER
        assert stored.is_active is True

    async def test_admin_may_detach_tenant_when_promoting(
        self, auth_service, cashier, root_ctx
    ):
        updated = await auth_service.admin_update_user(
            root_ctx, cashier.id, {"role": Role.SUPER_ADMIN, "tenant_id": None}, META
        )

        assert updated.role == Role.SUPER_ADMIN
        assert updated.tenant_id is None
