from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis import Redis

_DENYLIST_PREFIX = "tenantguard:denylist:"


def _ttl_seconds(expires_at: datetime) -> int:
    """Remaining lifetime of a token, clamped to at least one second.

    Naive timestamps are treated as UTC.
    """

    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


class RedisCache:
    """Redis fast path for the access-token blacklist.

    The store stays authoritative; entries here expire with the token they
    retire so the mirror never outgrows the live token population.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # A short-lived sync client keeps the async client off a temporary loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_token(self, token_digest: str, expires_at: datetime) -> None:
        await self.client.set(
            f"{_DENYLIST_PREFIX}{token_digest}", "1", ex=_ttl_seconds(expires_at)
        )

    async def is_token_denylisted(self, token_digest: str) -> bool:
        return bool(await self.client.exists(f"{_DENYLIST_PREFIX}{token_digest}"))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous-client variant exposing the same awaitable API.

    Used in tests, where the async client would bind to a per-test event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def denylist_token(self, token_digest: str, expires_at: datetime) -> None:
        self._sync_client.set(
            f"{_DENYLIST_PREFIX}{token_digest}", "1", ex=_ttl_seconds(expires_at)
        )

    async def is_token_denylisted(self, token_digest: str) -> bool:
        return bool(self._sync_client.exists(f"{_DENYLIST_PREFIX}{token_digest}"))

    async def close(self) -> None:
        self._sync_client.close()
