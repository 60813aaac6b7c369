from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol, Set

from tenantguard.logging import get_logger
from tenantguard.service.errors import (
    AccountDeactivatedError,
    ForbiddenError,
    MFAIncompleteError,
    PasswordChangedError,
    SessionRevokedError,
    TenantInactiveError,
    UnauthenticatedError,
    UserGoneError,
)
from tenantguard.service.tokens import TokenService, token_digest
from tenantguard.storage.models import Role, User, utcnow
from tenantguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class GuardStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def is_blacklisted(self, token_digest: str) -> bool: ...

    def touch_session(self, session_id: str, at: datetime) -> bool: ...


@dataclass
class RequestMeta:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuthContext:
    user_id: str
    role: Role
    tenant_id: Optional[str]
    session_id: Optional[str] = None


def require_roles(ctx: AuthContext, *roles: Role) -> AuthContext:
    if ctx.role not in roles:
        raise ForbiddenError("You do not have permission to perform this action")
    return ctx


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AccessGuard:
    """Validates bearer access tokens for protected routes.

    Checks run in a fixed order and the first failure wins: header,
    blacklist, signature and expiry, MFA step marker, user existence,
    token generation, account status, tenant status, password freshness.
    A passing request schedules a detached heartbeat on its session.
    """

    def __init__(
        self,
        store: GuardStore,
        tokens: TokenService,
        cache: Optional[RedisCache] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.cache = cache
        self._clock = clock
        self._heartbeats: Set[asyncio.Task] = set()

    async def _is_blacklisted(self, digest: str) -> bool:
        if self.cache is not None:
            try:
                if await self.cache.is_token_denylisted(digest):
                    return True
            except Exception as exc:
                logger.warning("redis_denylist_lookup_failed", error=str(exc))
        return self.store.is_blacklisted(digest)

    async def authenticate(
        self, authorization: Optional[str], meta: Optional[RequestMeta] = None
    ) -> AuthContext:
        token = bearer_token(authorization)
        if not token:
            raise UnauthenticatedError("You are not logged in. Please log in to get access.")

        if await self._is_blacklisted(token_digest(token)):
            logger.warning(
                "revoked_token_presented",
                ip_address=meta.ip_address if meta else None,
            )
            raise SessionRevokedError("This token has been revoked. Please log in again.")

        claims = self.tokens.verify_access(token)
        if "mfa_step" in claims:
            raise MFAIncompleteError("Complete MFA verification to access this resource.")

        user = self.store.get_user(str(claims.get("sub")))
        if not user:
            raise UserGoneError("The user belonging to this token no longer exists.")
        if claims.get("tgen") != user.token_generation:
            raise SessionRevokedError("Session has been revoked. Please log in again.")
        if not user.is_active:
            raise AccountDeactivatedError("Your account has been deactivated.")
        if user.tenant_id and (user.tenant is None or not user.tenant.usable):
            raise TenantInactiveError("Your organization is inactive.")
        if user.password_changed_at is not None:
            issued_at = int(claims.get("iat") or 0)
            if int(user.password_changed_at.timestamp()) > issued_at:
                raise PasswordChangedError(
                    "User recently changed password. Please log in again."
                )

        session_id = claims.get("sid")
        if session_id:
            self._schedule_heartbeat(session_id)
        return AuthContext(
            user_id=user.id,
            role=user.role,
            tenant_id=user.tenant_id,
            session_id=session_id,
        )

    def _schedule_heartbeat(self, session_id: str) -> None:
        task = asyncio.create_task(self._heartbeat(session_id))
        self._heartbeats.add(task)
        task.add_done_callback(self._heartbeats.discard)

    async def _heartbeat(self, session_id: str) -> None:
        try:
            await asyncio.to_thread(self.store.touch_session, session_id, self._clock())
        except Exception as exc:
            logger.warning(
                "session_heartbeat_failed",
                session_id=session_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def drain(self) -> None:
        """Wait for in-flight heartbeats."""
        if self._heartbeats:
            await asyncio.gather(*list(self._heartbeats), return_exceptions=True)
