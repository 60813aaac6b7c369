from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

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
    Role,
    Session,
    Tenant,
    User,
    utcnow,
)

REQUIRED_TABLES = (
    "tenant",
    "app_user",
    "user_session",
    "token_blacklist",
    "audit_record",
)

_USER_SELECT = """
    SELECT u.*,
           t.name AS t_name,
           t.is_active AS t_is_active,
           t.created_at AS t_created_at,
           t.deleted_at AS t_deleted_at
    FROM app_user u
    LEFT JOIN tenant t ON t.id = u.tenant_id
"""


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


# Unique indexes mapped to the field reported back to callers
_CONSTRAINT_FIELDS = {
    "app_user_email_live_idx": "email",
    "tenant_name_live_idx": "name",
}


class PostgresStore:
    """Postgres-backed store; one pooled connection and transaction per call."""

    def __init__(self, dsn: str, *, mfa_encryption_key: str | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[psycopg.Connection]:
        """Yield a pooled connection; commit on success, translate driver errors."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            field = _CONSTRAINT_FIELDS.get(constraint or "", "unknown")
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "referenced record missing",
                {"constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except errors.CheckViolation as exc:
            raise ConstraintViolation(
                "record violates a check constraint",
                {"constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except psycopg.Error as exc:
            self.logger.error("postgres_operation_failed", operation=operation, error=str(exc))
            raise StorageError(str(exc), operation=operation) from exc

    def _verify_required_schema(self) -> None:
        """Fail fast when tables from storage/schema.sql are missing."""

        with self._transaction("verify_schema") as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply tenantguard/storage/schema.sql.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._transaction("verify_connection") as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
        return Tenant(
            id=str(row["id"]),
            name=row["name"],
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            deleted_at=row.get("deleted_at"),
        )

    def _user_from_row(self, row: Dict[str, Any]) -> User:
        tenant_id = str(row["tenant_id"]) if row.get("tenant_id") else None
        tenant = None
        if tenant_id and row.get("t_name") is not None:
            tenant = Tenant(
                id=tenant_id,
                name=row["t_name"],
                is_active=row.get("t_is_active", True),
                created_at=row.get("t_created_at") or utcnow(),
                deleted_at=row.get("t_deleted_at"),
            )
        return User(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=Role(row.get("role") or Role.CASHIER.value),
            tenant_id=tenant_id,
            phone_number=row.get("phone_number"),
            is_active=row.get("is_active", True),
            mfa_secret=decrypt_mfa_secret(self._mfa_cipher, row.get("mfa_secret")),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            mfa_recovery_codes=list(row.get("mfa_recovery_codes") or []),
            refresh_token=row.get("refresh_token"),
            token_generation=int(row.get("token_generation") or 0),
            password_changed_at=row.get("password_changed_at"),
            password_reset_hash=row.get("password_reset_hash"),
            password_reset_expires_at=row.get("password_reset_expires_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            deleted_at=row.get("deleted_at"),
            tenant=tenant,
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            last_active=row.get("last_active") or utcnow(),
            created_at=row.get("created_at") or utcnow(),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditRecord:
        return AuditRecord(
            id=str(row["id"]),
            action=AuditAction(row["action"]),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            metadata=row.get("metadata") or {},
            created_at=row.get("created_at") or utcnow(),
        )

    # -- tenants ----------------------------------------------------------

    def create_tenant(self, name: str, *, is_active: bool = True) -> Tenant:
        with self._transaction("create_tenant") as conn:
            row = conn.execute(
                "INSERT INTO tenant (id, name, is_active) VALUES (%s, %s, %s) RETURNING *",
                (str(uuid.uuid4()), name, is_active),
            ).fetchone()
        return self._tenant_from_row(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        if not _is_uuid(tenant_id):
            return None
        with self._transaction("get_tenant") as conn:
            row = conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,)).fetchone()
        return self._tenant_from_row(row) if row else None

    def get_tenant_by_name(self, name: str) -> Optional[Tenant]:
        with self._transaction("get_tenant_by_name") as conn:
            row = conn.execute(
                "SELECT * FROM tenant WHERE lower(name) = lower(%s) AND deleted_at IS NULL",
                (name,),
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def list_tenants(self) -> List[Tenant]:
        with self._transaction("list_tenants") as conn:
            rows = conn.execute(
                "SELECT * FROM tenant WHERE deleted_at IS NULL ORDER BY created_at"
            ).fetchall()
        return [self._tenant_from_row(row) for row in rows]

    def set_tenant_active(self, tenant_id: str, is_active: bool) -> Optional[Tenant]:
        if not _is_uuid(tenant_id):
            return None
        with self._transaction("set_tenant_active") as conn:
            row = conn.execute(
                "UPDATE tenant SET is_active = %s WHERE id = %s AND deleted_at IS NULL RETURNING *",
                (is_active, tenant_id),
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    # -- users ------------------------------------------------------------

    def _fetch_user(self, conn: psycopg.Connection, user_id: str) -> Optional[User]:
        row = conn.execute(
            _USER_SELECT + " WHERE u.id = %s AND u.deleted_at IS NULL", (user_id,)
        ).fetchone()
        return self._user_from_row(row) if row else None

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
        user_id = str(uuid.uuid4())
        with self._transaction("create_user") as conn:
            conn.execute(
                """
                INSERT INTO app_user (id, name, email, password_hash, role, tenant_id, phone_number, is_active)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    user_id,
                    name,
                    email.lower(),
                    password_hash,
                    Role(role).value,
                    tenant_id,
                    phone_number,
                    is_active,
                ),
            )
            user = self._fetch_user(conn, user_id)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._transaction("get_user") as conn:
            return self._fetch_user(conn, user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._transaction("get_user_by_email") as conn:
            row = conn.execute(
                _USER_SELECT + " WHERE lower(u.email) = lower(%s) AND u.deleted_at IS NULL",
                (email,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_reset_hash(self, token_hash: str, now: datetime) -> Optional[User]:
        with self._transaction("get_user_by_reset_hash") as conn:
            row = conn.execute(
                _USER_SELECT
                + """
                WHERE u.password_reset_hash = %s
                  AND u.password_reset_expires_at > %s
                  AND u.deleted_at IS NULL
                """,
                (token_hash, now),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, *, tenant_id: Optional[str] = None) -> List[User]:
        with self._transaction("list_users") as conn:
            if tenant_id:
                rows = conn.execute(
                    _USER_SELECT
                    + " WHERE u.deleted_at IS NULL AND u.tenant_id = %s ORDER BY u.created_at",
                    (tenant_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    _USER_SELECT + " WHERE u.deleted_at IS NULL ORDER BY u.created_at"
                ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def _update_user_columns(
        self, operation: str, user_id: str, columns: Dict[str, Any]
    ) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        assignments = [
            sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder())
            for name in columns
        ]
        assignments.append(sql.SQL("updated_at = now()"))
        query = sql.SQL(
            "UPDATE app_user SET {} WHERE id = %s AND deleted_at IS NULL RETURNING id"
        ).format(sql.SQL(", ").join(assignments))
        with self._transaction(operation) as conn:
            row = conn.execute(query, (*columns.values(), user_id)).fetchone()
            if not row:
                return None
            return self._fetch_user(conn, user_id)

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        check_profile_fields(fields)
        columns = dict(fields)
        if "role" in columns:
            columns["role"] = Role(columns["role"]).value
        if "email" in columns:
            columns["email"] = columns["email"].lower()
        return self._update_user_columns("update_user", user_id, columns)

    def set_refresh_token(self, user_id: str, refresh_token: Optional[str]) -> None:
        self._update_user_columns(
            "set_refresh_token", user_id, {"refresh_token": refresh_token}
        )

    def set_mfa_secret(self, user_id: str, secret: str) -> None:
        self._update_user_columns(
            "set_mfa_secret",
            user_id,
            {
                "mfa_secret": encrypt_mfa_secret(self._mfa_cipher, secret),
                "mfa_enabled": False,
            },
        )

    def enable_mfa(self, user_id: str, recovery_code_hashes: Iterable[str]) -> None:
        self._update_user_columns(
            "enable_mfa",
            user_id,
            {"mfa_enabled": True, "mfa_recovery_codes": list(recovery_code_hashes)},
        )

    def disable_mfa(self, user_id: str) -> None:
        self._update_user_columns(
            "disable_mfa",
            user_id,
            {"mfa_enabled": False, "mfa_secret": None, "mfa_recovery_codes": []},
        )

    def consume_recovery_code(self, user_id: str, code_hash: str) -> Optional[int]:
        with self._transaction("consume_recovery_code") as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET mfa_recovery_codes = array_remove(mfa_recovery_codes, %s),
                    updated_at = now()
                WHERE id = %s AND deleted_at IS NULL AND %s = ANY(mfa_recovery_codes)
                RETURNING cardinality(mfa_recovery_codes) AS remaining
                """,
                (code_hash, user_id, code_hash),
            ).fetchone()
        return None if row is None else int(row["remaining"] or 0)

    def update_password(
        self,
        user_id: str,
        password_hash: str,
        changed_at: datetime,
        *,
        revoke_tokens: bool = True,
    ) -> Optional[User]:
        with self._transaction("update_password") as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s,
                    password_changed_at = %s,
                    password_reset_hash = NULL,
                    password_reset_expires_at = NULL,
                    token_generation = token_generation + CASE WHEN %s THEN 1 ELSE 0 END,
                    refresh_token = CASE WHEN %s THEN NULL ELSE refresh_token END,
                    updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING id
                """,
                (password_hash, changed_at, revoke_tokens, revoke_tokens, user_id),
            ).fetchone()
            if not row:
                return None
            return self._fetch_user(conn, user_id)

    def bump_token_generation(self, user_id: str) -> Optional[User]:
        with self._transaction("bump_token_generation") as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET token_generation = token_generation + 1,
                    refresh_token = NULL,
                    updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING id
                """,
                (user_id,),
            ).fetchone()
            if not row:
                return None
            return self._fetch_user(conn, user_id)

    def set_password_reset(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        self._update_user_columns(
            "set_password_reset",
            user_id,
            {"password_reset_hash": token_hash, "password_reset_expires_at": expires_at},
        )

    def clear_password_reset(self, user_id: str) -> None:
        self._update_user_columns(
            "clear_password_reset",
            user_id,
            {"password_reset_hash": None, "password_reset_expires_at": None},
        )

    def soft_delete_user(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._transaction("soft_delete_user") as conn:
            result = conn.execute(
                """
                UPDATE app_user SET deleted_at = now(), refresh_token = NULL
                WHERE id = %s AND deleted_at IS NULL
                """,
                (user_id,),
            )
            return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._transaction("delete_user") as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # -- sessions ---------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session:
        session = Session.new(user_id, ip_address=ip_address, user_agent=user_agent)
        with self._transaction("create_session") as conn:
            result = conn.execute(
                """
                INSERT INTO user_session (id, user_id, ip_address, user_agent, last_active, created_at)
                SELECT %s, id, %s, %s, %s, %s FROM app_user WHERE id = %s
                """,
                (
                    session.id,
                    ip_address,
                    user_agent,
                    session.last_active,
                    session.created_at,
                    user_id,
                ),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("user not found for session", {"user_id": user_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        if not _is_uuid(session_id):
            return None
        with self._transaction("get_session") as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE id = %s AND deleted_at IS NULL",
                (session_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, user_id: str, *, limit: int = 10) -> List[Session]:
        with self._transaction("list_sessions") as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_session
                WHERE user_id = %s AND deleted_at IS NULL
                ORDER BY last_active DESC
                LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._transaction("touch_session") as conn:
            result = conn.execute(
                "UPDATE user_session SET last_active = %s WHERE id = %s AND deleted_at IS NULL",
                (at, session_id),
            )
            return result.rowcount > 0

    def destroy_session(self, session_id: str) -> bool:
        if not _is_uuid(session_id):
            return False
        with self._transaction("destroy_session") as conn:
            result = conn.execute(
                "UPDATE user_session SET deleted_at = now() WHERE id = %s AND deleted_at IS NULL",
                (session_id,),
            )
            return result.rowcount > 0

    def destroy_user_sessions(self, user_id: str) -> int:
        with self._transaction("destroy_user_sessions") as conn:
            result = conn.execute(
                "UPDATE user_session SET deleted_at = now() WHERE user_id = %s AND deleted_at IS NULL",
                (user_id,),
            )
            return result.rowcount

    def destroy_idle_sessions(
        self, before: datetime, *, user_id: Optional[str] = None
    ) -> int:
        with self._transaction("destroy_idle_sessions") as conn:
            if user_id is not None:
                result = conn.execute(
                    """
                    UPDATE user_session SET deleted_at = now()
                    WHERE user_id = %s AND deleted_at IS NULL AND last_active < %s
                    """,
                    (user_id, before),
                )
            else:
                result = conn.execute(
                    """
                    UPDATE user_session SET deleted_at = now()
                    WHERE deleted_at IS NULL AND last_active < %s
                    """,
                    (before,),
                )
            return result.rowcount

    def purge_deleted_sessions(self, before: datetime) -> int:
        with self._transaction("purge_deleted_sessions") as conn:
            result = conn.execute(
                "DELETE FROM user_session WHERE deleted_at IS NOT NULL AND deleted_at < %s",
                (before,),
            )
            return result.rowcount

    # -- blacklist --------------------------------------------------------

    def add_blacklist_entry(self, token_digest: str, expires_at: datetime) -> None:
        with self._transaction("add_blacklist_entry") as conn:
            conn.execute(
                """
                INSERT INTO token_blacklist (token_digest, expires_at)
                VALUES (%s, %s)
                ON CONFLICT (token_digest) DO NOTHING
                """,
                (token_digest, expires_at),
            )

    def is_blacklisted(self, token_digest: str) -> bool:
        with self._transaction("is_blacklisted") as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM token_blacklist WHERE token_digest = %s",
                (token_digest,),
            ).fetchone()
        return row is not None

    def purge_expired_blacklist(self, now: datetime) -> int:
        with self._transaction("purge_expired_blacklist") as conn:
            result = conn.execute(
                "DELETE FROM token_blacklist WHERE expires_at < %s", (now,)
            )
            return result.rowcount

    # -- audit ------------------------------------------------------------

    def append_audit_record(self, record: AuditRecord) -> None:
        with self._transaction("append_audit_record") as conn:
            conn.execute(
                """
                INSERT INTO audit_record (id, user_id, action, ip_address, user_agent, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.user_id,
                    record.action.value,
                    record.ip_address,
                    record.user_agent,
                    Jsonb(record.metadata),
                    record.created_at,
                ),
            )

    def list_audit_records(
        self, *, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditRecord]:
        with self._transaction("list_audit_records") as conn:
            if user_id is not None:
                rows = conn.execute(
                    "SELECT * FROM audit_record WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                    (user_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_record ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                ).fetchall()
        return [self._audit_from_row(row) for row in reversed(rows)]
