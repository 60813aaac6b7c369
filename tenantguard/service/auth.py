from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from tenantguard.config import Settings
from tenantguard.logging import get_logger
from tenantguard.service import mfa
from tenantguard.service.audit import AuditTrail
from tenantguard.service.email import EmailService
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
    InvalidTokenError,
    NoActiveSessionError,
    NotFoundError,
    SessionHijackSuspectedError,
    SessionNotFoundError,
    SessionRevokedError,
    TenantInactiveError,
    TokenExpiredError,
    UserGoneError,
    UserNotFoundError,
    ValidationError,
)
from tenantguard.service.guard import AuthContext, RequestMeta, require_roles
from tenantguard.service.tokens import TokenPair, TokenService, token_digest
from tenantguard.storage.errors import ConstraintViolation
from tenantguard.storage.models import (
    AuditAction,
    Role,
    Session,
    Tenant,
    User,
    utcnow,
)
from tenantguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

SELF_SERVICE_FIELDS = frozenset({"name", "email", "phone_number"})
ADMIN_FIELDS = SELF_SERVICE_FIELDS | {"role", "tenant_id", "is_active"}
NON_NULLABLE_FIELDS = frozenset({"name", "email", "role", "is_active"})
SESSION_LIST_LIMIT = 10

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
DUPLICATE_EMAIL_MESSAGE = "User with this email already exists"


class AuthStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_reset_hash(self, token_hash: str, now: datetime) -> Optional[User]: ...

    def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.CASHIER,
        tenant_id: Optional[str] = None,
        phone_number: Optional[str] = None,
        is_active: bool = True,
    ) -> User: ...

    def list_users(self, *, tenant_id: Optional[str] = None) -> List[User]: ...

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]: ...

    def set_refresh_token(self, user_id: str, refresh_token: Optional[str]) -> None: ...

    def set_mfa_secret(self, user_id: str, secret: str) -> None: ...

    def enable_mfa(self, user_id: str, recovery_code_hashes: Iterable[str]) -> None: ...

    def disable_mfa(self, user_id: str) -> None: ...

    def consume_recovery_code(self, user_id: str, code_hash: str) -> Optional[int]: ...

    def update_password(
        self,
        user_id: str,
        password_hash: str,
        changed_at: datetime,
        *,
        revoke_tokens: bool = True,
    ) -> Optional[User]: ...

    def bump_token_generation(self, user_id: str) -> Optional[User]: ...

    def set_password_reset(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None: ...

    def clear_password_reset(self, user_id: str) -> None: ...

    def soft_delete_user(self, user_id: str) -> bool: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_session(
        self,
        user_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_sessions(self, user_id: str, *, limit: int = 10) -> List[Session]: ...

    def destroy_session(self, session_id: str) -> bool: ...

    def destroy_user_sessions(self, user_id: str) -> int: ...

    def destroy_idle_sessions(
        self, before: datetime, *, user_id: Optional[str] = None
    ) -> int: ...

    def add_blacklist_entry(self, token_digest: str, expires_at: datetime) -> None: ...

    def create_tenant(self, name: str, *, is_active: bool = True) -> Tenant: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_name(self, name: str) -> Optional[Tenant]: ...

    def list_tenants(self) -> List[Tenant]: ...

    def set_tenant_active(self, tenant_id: str, is_active: bool) -> Optional[Tenant]: ...


@dataclass
class LoginResult:
    user: User
    tokens: Optional[TokenPair] = None
    session: Optional[Session] = None
    mfa_required: bool = False
    mfa_token: Optional[str] = None
    recovery_codes_remaining: Optional[int] = None


@dataclass
class MFASetup:
    secret: str
    otpauth_uri: str


def normalize_email(email: str) -> str:
    return unicodedata.normalize("NFKC", email or "").strip().lower()


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class AuthService:
    """Login, MFA, token rotation, password lifecycle and account administration.

    Store calls are synchronous; slow collaborators (argon2, SMTP)
    run through ``asyncio.to_thread``. Every state change that spans several
    fields is a single store call.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        tokens: Optional[TokenService] = None,
        audit: Optional[AuditTrail] = None,
        email: Optional[EmailService] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens or TokenService(settings, clock=clock)
        self.audit = audit or AuditTrail(store)
        self.email = email or EmailService(
            base_url=settings.app_base_url,
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
        )
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    # -- hashing ----------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_hash(self, stored_hash: Optional[str], candidate: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, candidate)
        except (InvalidHashError, VerificationError):
            return False

    def _burn_hash(self, candidate: str) -> None:
        """Spend one argon2 verification so unknown emails cost the same as known ones."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self._verify_hash(self._dummy_hash, candidate)

    def _match_recovery_code(self, hashes: List[str], code: str) -> Optional[str]:
        if not code:
            return None
        for candidate in hashes:
            if self._verify_hash(candidate, code):
                return candidate
        return None

    # -- helpers ----------------------------------------------------------

    def _audit(
        self,
        action: AuditAction,
        user_id: Optional[str],
        meta: Optional[RequestMeta],
        **metadata: Any,
    ) -> None:
        self.audit.record(
            action,
            user_id,
            ip_address=meta.ip_address if meta else None,
            user_agent=meta.user_agent if meta else None,
            **metadata,
        )

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError("User not found")
        return user

    def _check_account_status(self, user: User, meta: Optional[RequestMeta]) -> None:
        if not user.is_active:
            self._audit(AuditAction.LOGIN_ATTEMPT_DEACTIVATED, user.id, meta)
            raise AccountDeactivatedError(
                "Your account has been deactivated. Please contact support."
            )
        if user.tenant_id and (user.tenant is None or not user.tenant.usable):
            self._audit(
                AuditAction.LOGIN_ATTEMPT_TENANT_INACTIVE,
                user.id,
                meta,
                tenant_id=user.tenant_id,
            )
            raise TenantInactiveError(
                "Your organization is inactive. Please contact support."
            )

    def _finish_login(
        self,
        user: User,
        meta: Optional[RequestMeta],
        action: AuditAction = AuditAction.LOGIN_SUCCESS,
        **audit_metadata: Any,
    ) -> LoginResult:
        meta = meta or RequestMeta()
        session = self.store.create_session(user.id, meta.ip_address, meta.user_agent)
        tokens = self.tokens.issue_token_pair(user, session_id=session.id)
        self.store.set_refresh_token(user.id, tokens.refresh_token)
        self._audit(action, user.id, meta, session_id=session.id, **audit_metadata)
        self.logger.info("login_completed", user_id=user.id, session_id=session.id)
        return LoginResult(user=user, tokens=tokens, session=session)

    def _verify_step_token(self, mfa_token: str) -> User:
        if not mfa_token:
            raise InvalidTokenError("Invalid session")
        claims = self.tokens.verify_mfa(mfa_token)
        user = self.store.get_user(str(claims.get("sub")))
        if not user:
            raise UserGoneError("The user belonging to this token no longer exists.")
        return user

    # -- login & MFA ------------------------------------------------------

    async def login(
        self, email: str, password: str, meta: Optional[RequestMeta] = None
    ) -> LoginResult:
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if not user:
            await asyncio.to_thread(self._burn_hash, password)
        if not user or not await asyncio.to_thread(
            self._verify_hash, user.password_hash, password
        ):
            self._audit(AuditAction.LOGIN_FAILED, None, meta, email=normalized)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        self._check_account_status(user, meta)

        if user.mfa_enabled:
            self.logger.info("login_mfa_required", user_id=user.id)
            return LoginResult(
                user=user,
                mfa_required=True,
                mfa_token=self.tokens.issue_mfa_token(user),
            )
        return self._finish_login(user, meta)

    async def setup_mfa(
        self, user_id: str, meta: Optional[RequestMeta] = None
    ) -> MFASetup:
        user = self._require_user(user_id)
        if user.mfa_enabled:
            raise ConflictError("MFA is already enabled.")
        secret = mfa.generate_secret()
        self.store.set_mfa_secret(user.id, secret)
        self._audit(AuditAction.MFA_SETUP_STARTED, user.id, meta)
        return MFASetup(
            secret=secret,
            otpauth_uri=mfa.otpauth_uri(secret, user.email, self.settings.mfa_issuer),
        )

    async def activate_mfa(
        self, user_id: str, code: str, meta: Optional[RequestMeta] = None
    ) -> List[str]:
        user = self._require_user(user_id)
        if user.mfa_enabled:
            raise ConflictError("MFA is already enabled.")
        if not user.mfa_secret:
            raise ValidationError("MFA setup not initiated.")
        if not mfa.verify_totp(user.mfa_secret, code):
            self._audit(AuditAction.MFA_FAILED, user.id, meta, stage="activate")
            raise InvalidMFACodeError("Invalid MFA code. Please try again.")

        codes = mfa.generate_recovery_codes()
        hashes = await asyncio.to_thread(lambda: [self.hash_password(c) for c in codes])
        self.store.enable_mfa(user.id, hashes)
        self._audit(AuditAction.MFA_ENABLED, user.id, meta)
        return codes

    async def verify_mfa_login(
        self, mfa_token: str, code: str, meta: Optional[RequestMeta] = None
    ) -> LoginResult:
        user = self._verify_step_token(mfa_token)
        if not user.mfa_enabled or not user.mfa_secret or not mfa.verify_totp(
            user.mfa_secret, code
        ):
            self._audit(AuditAction.MFA_FAILED, user.id, meta, stage="login")
            raise InvalidMFACodeError("Invalid MFA code. Please try again.")
        self._check_account_status(user, meta)
        return self._finish_login(user, meta, AuditAction.MFA_SUCCESS)

    async def verify_recovery_login(
        self, mfa_token: str, recovery_code: str, meta: Optional[RequestMeta] = None
    ) -> LoginResult:
        user = self._verify_step_token(mfa_token)
        # A rejected account must not burn a one-time code
        self._check_account_status(user, meta)
        normalized = mfa.normalize_recovery_code(recovery_code)
        matched = None
        if user.mfa_enabled and user.mfa_recovery_codes:
            matched = await asyncio.to_thread(
                self._match_recovery_code, user.mfa_recovery_codes, normalized
            )
        remaining = (
            self.store.consume_recovery_code(user.id, matched) if matched is not None else None
        )
        if remaining is None:
            self._audit(AuditAction.RECOVERY_CODE_FAILED, user.id, meta)
            raise InvalidRecoveryCodeError("Invalid or already used recovery code.")

        result = self._finish_login(
            user, meta, AuditAction.RECOVERY_CODE_SUCCESS, remaining=remaining
        )
        result.recovery_codes_remaining = remaining
        return result

    async def disable_mfa(
        self, user_id: str, password: str, meta: Optional[RequestMeta] = None
    ) -> None:
        user = self._require_user(user_id)
        if not await asyncio.to_thread(self._verify_hash, user.password_hash, password):
            raise IncorrectPasswordError("Incorrect password.")
        self.store.disable_mfa(user.id)
        self._audit(AuditAction.MFA_DISABLED, user.id, meta)

    # -- session lifecycle ------------------------------------------------

    async def logout(
        self,
        access_token: Optional[str],
        meta: Optional[RequestMeta] = None,
        *,
        fallback_user_id: Optional[str] = None,
    ) -> None:
        if not access_token:
            raise NoActiveSessionError("No active session found.")
        claims = self.tokens.verify_access(access_token, verify_exp=False)

        digest = token_digest(access_token)
        expires_at = self.tokens.expires_at(claims) or self._clock()
        self.store.add_blacklist_entry(digest, expires_at)
        if self.cache is not None:
            try:
                await self.cache.denylist_token(digest, expires_at)
            except Exception as exc:
                self.logger.warning("redis_denylist_write_failed", error=str(exc))

        user_id = claims.get("sub") or fallback_user_id
        session_id = claims.get("sid")
        if session_id:
            self.store.destroy_session(session_id)
        if user_id:
            self.store.set_refresh_token(user_id, None)
        self._audit(AuditAction.USER_LOGOUT, user_id, meta, session_id=session_id)

    async def refresh(
        self, refresh_token: Optional[str], meta: Optional[RequestMeta] = None
    ) -> TokenPair:
        if not refresh_token:
            raise InvalidRefreshTokenError("No refresh token provided.")
        try:
            claims = self.tokens.verify_refresh(refresh_token)
        except (InvalidTokenError, TokenExpiredError) as exc:
            raise InvalidRefreshTokenError("Invalid or expired refresh token.") from exc

        user = self.store.get_user(str(claims.get("sub")))
        if not user:
            raise UserGoneError("The user belonging to this token no longer exists.")
        if claims.get("tgen") != user.token_generation:
            raise SessionRevokedError("Session has been revoked. Please log in again.")
        if not user.refresh_token or not hmac.compare_digest(
            user.refresh_token, refresh_token
        ):
            self._audit(AuditAction.REFRESH_REUSE_DETECTED, user.id, meta)
            raise SessionHijackSuspectedError(
                "Refresh token expired or hijacked. Please log in again."
            )
        session_id = claims.get("sid")
        if session_id and self.store.get_session(session_id) is None:
            raise SessionRevokedError("Session has been revoked. Please log in again.")

        pair = self.tokens.issue_token_pair(user, session_id=session_id)
        self.store.set_refresh_token(user.id, pair.refresh_token)
        return pair

    async def revoke_all_sessions(
        self, user_id: str, meta: Optional[RequestMeta] = None
    ) -> int:
        if self.store.bump_token_generation(user_id) is None:
            raise UserNotFoundError("User not found")
        count = self.store.destroy_user_sessions(user_id)
        self._audit(AuditAction.ALL_SESSIONS_REVOKED, user_id, meta, sessions=count)
        return count

    async def revoke_session(
        self, user_id: str, session_id: str, meta: Optional[RequestMeta] = None
    ) -> None:
        session = self.store.get_session(session_id)
        if not session or session.user_id != user_id:
            raise SessionNotFoundError("Session not found.")
        self.store.destroy_session(session.id)
        self._audit(
            AuditAction.SPECIFIC_SESSION_REVOKED, user_id, meta, session_id=session.id
        )

    async def list_sessions(self, user_id: str) -> List[Session]:
        cutoff = self._clock() - timedelta(days=self.settings.session_retention_days)
        self.store.destroy_idle_sessions(cutoff, user_id=user_id)
        return self.store.list_sessions(user_id, limit=SESSION_LIST_LIMIT)

    # -- passwords --------------------------------------------------------

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        meta: Optional[RequestMeta] = None,
    ) -> TokenPair:
        meta = meta or RequestMeta()
        user = self._require_user(user_id)
        if not await asyncio.to_thread(
            self._verify_hash, user.password_hash, current_password
        ):
            self._audit(AuditAction.PASSWORD_CHANGE_FAILED, user.id, meta)
            raise IncorrectPasswordError("Your current password is wrong.")

        password_hash = await asyncio.to_thread(self.hash_password, new_password)
        updated = self.store.update_password(
            user.id, password_hash, self._clock(), revoke_tokens=True
        )
        if updated is None:
            raise UserGoneError("The user belonging to this token no longer exists.")
        self.store.destroy_user_sessions(user.id)
        session = self.store.create_session(user.id, meta.ip_address, meta.user_agent)
        pair = self.tokens.issue_token_pair(updated, session_id=session.id)
        self.store.set_refresh_token(user.id, pair.refresh_token)
        self._audit(AuditAction.PASSWORD_CHANGE_SUCCESS, user.id, meta, session_id=session.id)
        return pair

    async def forgot_password(
        self, email: str, meta: Optional[RequestMeta] = None
    ) -> None:
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if not user:
            self._audit(
                AuditAction.PASSWORD_RESET_REQUEST_NONEXISTENT, None, meta, email=normalized
            )
            return

        token = secrets.token_hex(32)
        expires_at = self._clock() + timedelta(minutes=self.settings.reset_token_ttl_minutes)
        self.store.set_password_reset(user.id, hash_reset_token(token), expires_at)
        try:
            await asyncio.to_thread(self.email.send_password_reset, user.email, token)
        except DeliveryError:
            self.store.clear_password_reset(user.id)
            self._audit(AuditAction.PASSWORD_RESET_EMAIL_FAILED, user.id, meta)
            raise
        self._audit(AuditAction.PASSWORD_RESET_REQUESTED, user.id, meta)

    async def reset_password(
        self, token: str, new_password: str, meta: Optional[RequestMeta] = None
    ) -> None:
        now = self._clock()
        user = self.store.get_user_by_reset_hash(hash_reset_token(token or ""), now)
        if not user:
            self._audit(AuditAction.PASSWORD_RESET_FAILED, None, meta)
            raise InvalidOrExpiredResetTokenError("Token is invalid or has expired")
        password_hash = await asyncio.to_thread(self.hash_password, new_password)
        self.store.update_password(user.id, password_hash, now, revoke_tokens=True)
        self.store.destroy_user_sessions(user.id)
        self._audit(AuditAction.PASSWORD_RESET_SUCCESS, user.id, meta)

    # -- accounts ---------------------------------------------------------

    async def register(
        self,
        actor: AuthContext,
        *,
        name: str,
        email: str,
        password: str,
        role: Role,
        tenant_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> User:
        require_roles(actor, Role.SUPER_ADMIN)
        role = Role(role)
        normalized = normalize_email(email)
        if self.store.get_user_by_email(normalized):
            raise ValidationError(DUPLICATE_EMAIL_MESSAGE)

        tenant_id = None
        if tenant_name:
            tenant = self.store.get_tenant_by_name(tenant_name.strip())
            if not tenant:
                raise NotFoundError("Organization not found.")
            tenant_id = tenant.id
        elif role != Role.SUPER_ADMIN:
            raise ValidationError("Organization name is required for this role.")

        password_hash = await asyncio.to_thread(self.hash_password, password)
        try:
            user = self.store.create_user(
                name.strip(),
                normalized,
                password_hash,
                role=role,
                tenant_id=tenant_id,
                phone_number=phone_number,
            )
        except ConstraintViolation as exc:
            raise ValidationError(DUPLICATE_EMAIL_MESSAGE, detail=exc.detail) from exc

        try:
            await asyncio.to_thread(self.email.send_welcome, user.email, user.name)
        except DeliveryError:
            self._audit(AuditAction.USER_REGISTERED_EMAIL_FAILED, user.id, meta)
        else:
            self._audit(
                AuditAction.USER_REGISTERED,
                user.id,
                meta,
                role=role.value,
                registered_by=actor.user_id,
            )
        return user

    async def get_me(self, user_id: str) -> User:
        return self._require_user(user_id)

    @staticmethod
    def _reject_nulls(projection: Dict[str, Any]) -> None:
        nulls = sorted(
            k for k, v in projection.items() if v is None and k in NON_NULLABLE_FIELDS
        )
        if nulls:
            raise ValidationError(
                f"{', '.join(nulls)} cannot be empty.", detail={"fields": nulls}
            )

    def _apply_update(self, user_id: str, fields: Dict[str, Any]) -> User:
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        try:
            updated = self.store.update_user(user_id, fields)
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                raise ValidationError(DUPLICATE_EMAIL_MESSAGE) from exc
            raise ValidationError(exc.message, detail=exc.detail) from exc
        if updated is None:
            raise UserNotFoundError("User not found")
        return updated

    async def update_me(
        self, user_id: str, fields: Dict[str, Any], meta: Optional[RequestMeta] = None
    ) -> User:
        projection = {k: v for k, v in fields.items() if k in SELF_SERVICE_FIELDS}
        if not projection:
            raise ValidationError("No valid fields provided for update.")
        self._reject_nulls(projection)
        updated = self._apply_update(user_id, projection)
        self._audit(
            AuditAction.PROFILE_UPDATED, user_id, meta, fields=sorted(projection)
        )
        return updated

    async def list_users(
        self, actor: AuthContext, meta: Optional[RequestMeta] = None
    ) -> List[User]:
        require_roles(actor, Role.SUPER_ADMIN, Role.ADMIN)
        if actor.role == Role.SUPER_ADMIN:
            users = self.store.list_users()
        else:
            users = self.store.list_users(tenant_id=actor.tenant_id)
        self._audit(AuditAction.USER_LIST_VIEWED, actor.user_id, meta, count=len(users))
        return users

    async def admin_update_user(
        self,
        actor: AuthContext,
        user_id: str,
        fields: Dict[str, Any],
        meta: Optional[RequestMeta] = None,
    ) -> User:
        require_roles(actor, Role.SUPER_ADMIN)
        projection = {k: v for k, v in fields.items() if k in ADMIN_FIELDS}
        if not projection:
            raise ValidationError("No valid fields provided for update.")
        self._reject_nulls(projection)
        target = self._require_user(user_id)

        if "role" in projection:
            projection["role"] = Role(projection["role"])
        role = projection.get("role", target.role)
        tenant_id = projection.get("tenant_id", target.tenant_id)
        if "tenant_id" in projection and tenant_id is not None:
            tenant = self.store.get_tenant(tenant_id)
            if not tenant or tenant.deleted_at is not None:
                raise NotFoundError("Tenant not found.")
        if role != Role.SUPER_ADMIN and tenant_id is None:
            raise ValidationError("Non-SuperAdmin users must belong to an organization.")

        updated = self._apply_update(target.id, projection)
        self._audit(
            AuditAction.ADMIN_USER_UPDATED,
            actor.user_id,
            meta,
            target_user_id=target.id,
            fields=sorted(projection),
        )
        return updated

    async def admin_delete_user(
        self,
        actor: AuthContext,
        user_id: str,
        *,
        hard: bool = False,
        meta: Optional[RequestMeta] = None,
    ) -> None:
        require_roles(actor, Role.SUPER_ADMIN)
        if user_id == actor.user_id:
            raise ValidationError("You cannot delete your own account.")
        target = self._require_user(user_id)
        self.store.destroy_user_sessions(target.id)
        self.store.bump_token_generation(target.id)
        if hard:
            self.store.delete_user(target.id)
        else:
            self.store.soft_delete_user(target.id)
        self._audit(
            AuditAction.ADMIN_USER_DELETED,
            actor.user_id,
            meta,
            target_user_id=target.id,
            hard=hard,
        )

    # -- tenants ----------------------------------------------------------

    async def create_tenant(
        self,
        actor: AuthContext,
        name: str,
        *,
        is_active: bool = True,
        meta: Optional[RequestMeta] = None,
    ) -> Tenant:
        require_roles(actor, Role.SUPER_ADMIN)
        try:
            tenant = self.store.create_tenant(name.strip(), is_active=is_active)
        except ConstraintViolation as exc:
            raise ConflictError("Organization already exists.", detail=exc.detail) from exc
        self._audit(
            AuditAction.TENANT_CREATED, actor.user_id, meta, tenant_id=tenant.id, name=tenant.name
        )
        return tenant

    async def list_tenants(self, actor: AuthContext) -> List[Tenant]:
        require_roles(actor, Role.SUPER_ADMIN)
        return self.store.list_tenants()

    async def update_tenant(
        self,
        actor: AuthContext,
        tenant_id: str,
        *,
        is_active: bool,
        meta: Optional[RequestMeta] = None,
    ) -> Tenant:
        require_roles(actor, Role.SUPER_ADMIN)
        tenant = self.store.set_tenant_active(tenant_id, is_active)
        if not tenant:
            raise NotFoundError("Tenant not found.")
        self._audit(
            AuditAction.TENANT_UPDATED,
            actor.user_id,
            meta,
            tenant_id=tenant.id,
            is_active=is_active,
        )
        return tenant
