from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from tenantguard.logging import get_logger
from tenantguard.storage.common import (
    build_mfa_cipher,
    check_profile_fields,
    decrypt_mfa_secret,
    encrypt_mfa_secret,
)
from tenantguard.storage.errors import ConstraintViolation, StorageError
from tenantguard.storage.models import (
    AuditAction,
    AuditRecord,
    BlacklistEntry,
    Role,
    Session,
    Tenant,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory backing store persisted to a JSON file under ``fs_root``.

    All reads and writes run under a single re-entrant lock, so each method is
    atomic with respect to the others. Returned records are copies.
    """

    def __init__(
        self, fs_root: str = "/tmp/tenantguard", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.sessions: Dict[str, Session] = {}
        self.blacklist: Dict[str, BlacklistEntry] = {}
        self.audit_log: List[AuditRecord] = []
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # -- health -----------------------------------------------------------

    def verify_connection(self) -> None:
        self._state_path()

    def close(self) -> None:
        return None

    # -- tenants ----------------------------------------------------------

    def create_tenant(self, name: str, *, is_active: bool = True) -> Tenant:
        with self._data_lock:
            if any(
                t.name.lower() == name.lower() and t.deleted_at is None
                for t in self.tenants.values()
            ):
                raise ConstraintViolation("tenant already exists", {"field": "name"})
            tenant = Tenant(id=str(uuid.uuid4()), name=name, is_active=is_active)
            self.tenants[tenant.id] = tenant
            self._persist_state()
            return replace(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return replace(tenant) if tenant else None

    def get_tenant_by_name(self, name: str) -> Optional[Tenant]:
        with self._data_lock:
            for tenant in self.tenants.values():
                if tenant.deleted_at is None and tenant.name.lower() == name.lower():
                    return replace(tenant)
            return None

    def list_tenants(self) -> List[Tenant]:
        with self._data_lock:
            tenants = [t for t in self.tenants.values() if t.deleted_at is None]
            return [replace(t) for t in sorted(tenants, key=lambda t: t.created_at)]

    def set_tenant_active(self, tenant_id: str, is_active: bool) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant or tenant.deleted_at is not None:
                return None
            tenant.is_active = is_active
            self._persist_state()
            return replace(tenant)

    # -- users ------------------------------------------------------------

    def _email_taken(self, email: str, *, exclude_id: Optional[str] = None) -> bool:
        lowered = email.lower()
        return any(
            u.email.lower() == lowered and u.deleted_at is None and u.id != exclude_id
            for u in self.users.values()
        )

    def _copy_user(self, user: User) -> User:
        tenant = self.tenants.get(user.tenant_id) if user.tenant_id else None
        return replace(
            user,
            mfa_recovery_codes=list(user.mfa_recovery_codes),
            tenant=replace(tenant) if tenant else None,
        )

    def _live_user(self, user_id: str) -> Optional[User]:
        user = self.users.get(user_id)
        if not user or user.deleted_at is not None:
            return None
        return user

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
    ) -> User:
        with self._data_lock:
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if tenant_id and tenant_id not in self.tenants:
                raise ConstraintViolation("tenant not found", {"tenant_id": tenant_id})
            user = User(
                id=str(uuid.uuid4()),
                name=name,
                email=email.lower(),
                password_hash=password_hash,
                role=Role(role),
                tenant_id=tenant_id,
                phone_number=phone_number,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return self._copy_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self._live_user(user_id)
            return self._copy_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        with self._data_lock:
            for user in self.users.values():
                if user.deleted_at is None and user.email.lower() == lowered:
                    return self._copy_user(user)
            return None

    def get_user_by_reset_hash(self, token_hash: str, now: datetime) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if (
                    user.deleted_at is None
                    and user.password_reset_hash == token_hash
                    and user.password_reset_expires_at is not None
                    and user.password_reset_expires_at > now
                ):
                    return self._copy_user(user)
            return None

    def list_users(self, *, tenant_id: Optional[str] = None) -> List[User]:
        with self._data_lock:
            users = [
                u
                for u in self.users.values()
                if u.deleted_at is None and (tenant_id is None or u.tenant_id == tenant_id)
            ]
            users.sort(key=lambda u: u.created_at)
            return [self._copy_user(u) for u in users]

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        check_profile_fields(fields)
        with self._data_lock:
            user = self._live_user(user_id)
            if not user:
                return None
            if "email" in fields and self._email_taken(fields["email"], exclude_id=user_id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            tenant_id = fields.get("tenant_id")
            if tenant_id and tenant_id not in self.tenants:
                raise ConstraintViolation("tenant not found", {"tenant_id": tenant_id})
            for key, value in fields.items():
                if key == "role":
                    value = Role(value)
                elif key == "email":
                    value = value.lower()
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return self._copy_user(user)

    def _mutate_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._data_lock:
            user = self._live_user(user_id)
            if not user:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return self._copy_user(user)

    def set_refresh_token(self, user_id: str, refresh_token: Optional[str]) -> None:
        self._mutate_user(user_id, refresh_token=refresh_token)

    def set_mfa_secret(self, user_id: str, secret: str) -> None:
        self._mutate_user(user_id, mfa_secret=secret, mfa_enabled=False)

    def enable_mfa(self, user_id: str, recovery_code_hashes: Iterable[str]) -> None:
        self._mutate_user(
            user_id, mfa_enabled=True, mfa_recovery_codes=list(recovery_code_hashes)
        )

    def disable_mfa(self, user_id: str) -> None:
        self._mutate_user(
            user_id, mfa_enabled=False, mfa_secret=None, mfa_recovery_codes=[]
        )

    def consume_recovery_code(self, user_id: str, code_hash: str) -> Optional[int]:
        """Remove one recovery code hash; returns the count left, or None if absent."""
        with self._data_lock:
            user = self._live_user(user_id)
            if not user or code_hash not in user.mfa_recovery_codes:
                return None
            user.mfa_recovery_codes.remove(code_hash)
            user.updated_at = utcnow()
            self._persist_state()
            return len(user.mfa_recovery_codes)

    def update_password(
        self,
        user_id: str,
        password_hash: str,
        changed_at: datetime,
        *,
        revoke_tokens: bool = True,
    ) -> Optional[User]:
        with self._data_lock:
            user = self._live_user(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.password_changed_at = changed_at
            user.password_reset_hash = None
            user.password_reset_expires_at = None
            if revoke_tokens:
                user.token_generation += 1
                user.refresh_token = None
            user.updated_at = utcnow()
            self._persist_state()
            return self._copy_user(user)

    def bump_token_generation(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self._live_user(user_id)
            if not user:
                return None
            user.token_generation += 1
            user.refresh_token = None
            user.updated_at = utcnow()
            self._persist_state()
            return self._copy_user(user)

    def set_password_reset(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        self._mutate_user(
            user_id, password_reset_hash=token_hash, password_reset_expires_at=expires_at
        )

    def clear_password_reset(self, user_id: str) -> None:
        self._mutate_user(
            user_id, password_reset_hash=None, password_reset_expires_at=None
        )

    def soft_delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self._live_user(user_id)
            if not user:
                return False
            user.deleted_at = utcnow()
            user.refresh_token = None
            self._persist_state()
            return True

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id)
            self._persist_state()
            return True

    # -- sessions ---------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for session", {"user_id": user_id})
            session = Session.new(user_id, ip_address=ip_address, user_agent=user_agent)
            self.sessions[session.id] = session
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.deleted_at is not None:
                return None
            return replace(session)

    def list_sessions(self, user_id: str, *, limit: int = 10) -> List[Session]:
        with self._data_lock:
            live = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.deleted_at is None
            ]
            live.sort(key=lambda s: s.last_active, reverse=True)
            return [replace(s) for s in live[:limit]]

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.deleted_at is not None:
                return False
            session.last_active = at
            self._persist_state()
            return True

    def destroy_session(self, session_id: str) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.deleted_at is not None:
                return False
            session.deleted_at = utcnow()
            self._persist_state()
            return True

    def destroy_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            now = utcnow()
            count = 0
            for session in self.sessions.values():
                if session.user_id == user_id and session.deleted_at is None:
                    session.deleted_at = now
                    count += 1
            if count:
                self._persist_state()
            return count

    def destroy_idle_sessions(
        self, before: datetime, *, user_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            now = utcnow()
            count = 0
            for session in self.sessions.values():
                if session.deleted_at is not None or session.last_active >= before:
                    continue
                if user_id is not None and session.user_id != user_id:
                    continue
                session.deleted_at = now
                count += 1
            if count:
                self._persist_state()
            return count

    def purge_deleted_sessions(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, s in self.sessions.items()
                if s.deleted_at is not None and s.deleted_at < before
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- blacklist --------------------------------------------------------

    def add_blacklist_entry(self, token_digest: str, expires_at: datetime) -> None:
        with self._data_lock:
            if token_digest in self.blacklist:
                return
            self.blacklist[token_digest] = BlacklistEntry(
                token_digest=token_digest, expires_at=expires_at
            )
            self._persist_state()

    def is_blacklisted(self, token_digest: str) -> bool:
        with self._data_lock:
            return token_digest in self.blacklist

    def purge_expired_blacklist(self, now: datetime) -> int:
        with self._data_lock:
            expired = [d for d, e in self.blacklist.items() if e.expires_at < now]
            for digest in expired:
                self.blacklist.pop(digest, None)
            if expired:
                self._persist_state()
            return len(expired)

    # -- audit ------------------------------------------------------------

    def append_audit_record(self, record: AuditRecord) -> None:
        with self._data_lock:
            self.audit_log.append(replace(record, metadata=dict(record.metadata)))
            self._persist_state()

    def list_audit_records(
        self, *, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditRecord]:
        with self._data_lock:
            records = [
                r for r in self.audit_log if user_id is None or r.user_id == user_id
            ]
            return [replace(r) for r in records[-limit:]]

    # -- persistence ------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "tenants": [self._serialize_tenant(t) for t in self.tenants.values()],
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "blacklist": [
                {
                    "token_digest": e.token_digest,
                    "expires_at": self._serialize_datetime(e.expires_at),
                    "created_at": self._serialize_datetime(e.created_at),
                }
                for e in self.blacklist.values()
            ],
            "audit_log": [self._serialize_audit(r) for r in self.audit_log],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageError(
                f"failed to persist in-memory state: {exc}", operation="persist_state"
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.tenants = {
            t["id"]: self._deserialize_tenant(t) for t in data.get("tenants", [])
        }
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.blacklist = {
            e["token_digest"]: BlacklistEntry(
                token_digest=e["token_digest"],
                expires_at=self._deserialize_datetime(e["expires_at"]),
                created_at=self._deserialize_datetime(e["created_at"]),
            )
            for e in data.get("blacklist", [])
        }
        self.audit_log = [self._deserialize_audit(r) for r in data.get("audit_log", [])]
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_tenant(self, tenant: Tenant) -> dict:
        return {
            "id": tenant.id,
            "name": tenant.name,
            "is_active": tenant.is_active,
            "created_at": self._serialize_datetime(tenant.created_at),
            "deleted_at": self._serialize_datetime(tenant.deleted_at),
        }

    def _deserialize_tenant(self, data: dict) -> Tenant:
        return Tenant(
            id=str(data["id"]),
            name=data["name"],
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "password_hash": user.password_hash,
            "role": user.role.value,
            "tenant_id": user.tenant_id,
            "phone_number": user.phone_number,
            "is_active": user.is_active,
            "mfa_secret": encrypt_mfa_secret(self._mfa_cipher, user.mfa_secret),
            "mfa_enabled": user.mfa_enabled,
            "mfa_recovery_codes": list(user.mfa_recovery_codes),
            "refresh_token": user.refresh_token,
            "token_generation": user.token_generation,
            "password_changed_at": self._serialize_datetime(user.password_changed_at),
            "password_reset_hash": user.password_reset_hash,
            "password_reset_expires_at": self._serialize_datetime(
                user.password_reset_expires_at
            ),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "deleted_at": self._serialize_datetime(user.deleted_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            name=data["name"],
            email=data["email"],
            password_hash=data["password_hash"],
            role=Role(data.get("role", Role.CASHIER.value)),
            tenant_id=data.get("tenant_id"),
            phone_number=data.get("phone_number"),
            is_active=data.get("is_active", True),
            mfa_secret=decrypt_mfa_secret(self._mfa_cipher, data.get("mfa_secret")),
            mfa_enabled=data.get("mfa_enabled", False),
            mfa_recovery_codes=list(data.get("mfa_recovery_codes") or []),
            refresh_token=data.get("refresh_token"),
            token_generation=int(data.get("token_generation", 0)),
            password_changed_at=self._deserialize_datetime(data.get("password_changed_at")),
            password_reset_hash=data.get("password_reset_hash"),
            password_reset_expires_at=self._deserialize_datetime(
                data.get("password_reset_expires_at")
            ),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "last_active": self._serialize_datetime(session.last_active),
            "created_at": self._serialize_datetime(session.created_at),
            "deleted_at": self._serialize_datetime(session.deleted_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            last_active=self._deserialize_datetime(data["last_active"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_audit(self, record: AuditRecord) -> dict:
        return {
            "id": record.id,
            "action": record.action.value,
            "user_id": record.user_id,
            "ip_address": record.ip_address,
            "user_agent": record.user_agent,
            "metadata": record.metadata,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_audit(self, data: dict) -> AuditRecord:
        return AuditRecord(
            id=data["id"],
            action=AuditAction(data["action"]),
            user_id=data.get("user_id"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            metadata=data.get("metadata") or {},
            created_at=self._deserialize_datetime(data["created_at"]),
        )
