"""Periodic cleanup of blacklist entries and sessions."""

from datetime import timedelta

from tenantguard.service.maintenance import MaintenanceService
from tenantguard.storage.memory import MemoryStore
from tenantguard.storage.models import Role, utcnow


class BrokenBlacklistStore(MemoryStore):
    def purge_expired_blacklist(self, now):
        raise RuntimeError("blacklist table locked")


def _seed(store):
    user = store.create_user("Root", "root@example.com", "hash", role=Role.SUPER_ADMIN)
    now = utcnow()
    store.add_blacklist_entry("a" * 64, now - timedelta(minutes=1))
    store.add_blacklist_entry("b" * 64, now + timedelta(minutes=10))
    idle = store.create_session(user.id)
    store.touch_session(idle.id, now - timedelta(days=45))
    fresh = store.create_session(user.id)
    return user, idle, fresh


async def test_run_once_purges_and_expires(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="k")
    _, idle, fresh = _seed(store)

    results = await MaintenanceService(store, retention_days=30).run_once()

    assert results["blacklist_purged"] == 1
    assert results["sessions_expired"] == 1
    assert results["sessions_purged"] == 0
    assert store.get_session(idle.id) is None
    assert store.get_session(fresh.id) is not None
    assert store.is_blacklisted("b" * 64)


async def test_old_soft_deleted_sessions_are_removed(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="k")
    user, _, fresh = _seed(store)
    store.destroy_session(fresh.id)
    later = utcnow() + timedelta(days=31)

    results = await MaintenanceService(store, retention_days=30, clock=lambda: later).run_once()

    assert results["sessions_purged"] == 2
    assert fresh.id not in store.sessions


async def test_failing_step_does_not_stop_the_run(tmp_path):
    store = BrokenBlacklistStore(fs_root=str(tmp_path), mfa_encryption_key="k")
    _, idle, _ = _seed(store)

    results = await MaintenanceService(store, retention_days=30).run_once()

    assert results["blacklist_purged"] == -1
    assert results["sessions_expired"] == 1
    assert store.get_session(idle.id) is None
