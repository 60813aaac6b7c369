from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, Protocol

from tenantguard.logging import get_logger
from tenantguard.storage.models import utcnow

logger = get_logger(__name__)


class MaintenanceStore(Protocol):
    def purge_expired_blacklist(self, now: datetime) -> int: ...

    def destroy_idle_sessions(self, before: datetime, *, user_id=None) -> int: ...

    def purge_deleted_sessions(self, before: datetime) -> int: ...


class MaintenanceService:
    """Periodic cleanup of the blacklist and session ledger.

    Each step runs on its own; a failing step is logged and the remaining
    steps still run. Every step is idempotent.
    """

    def __init__(
        self,
        store: MaintenanceStore,
        *,
        retention_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.retention = timedelta(days=retention_days)
        self._clock = clock

    async def _step(self, name: str, fn, *args, **kwargs) -> int:
        try:
            count = await asyncio.to_thread(fn, *args, **kwargs)
        except Exception as exc:
            logger.error(
                "maintenance_step_failed",
                step=name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return -1
        logger.info("maintenance_step_completed", step=name, count=count)
        return count

    async def run_once(self) -> Dict[str, int]:
        """Run all cleanup steps; a count of -1 marks a failed step."""
        now = self._clock()
        cutoff = now - self.retention
        results = {
            "blacklist_purged": await self._step(
                "purge_expired_blacklist", self.store.purge_expired_blacklist, now
            ),
            "sessions_expired": await self._step(
                "destroy_idle_sessions", self.store.destroy_idle_sessions, cutoff
            ),
            "sessions_purged": await self._step(
                "purge_deleted_sessions", self.store.purge_deleted_sessions, cutoff
            ),
        }
        logger.info("maintenance_run_completed", **results)
        return results

    async def run_forever(self, interval_seconds: int) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(interval_seconds)
