from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    SUPER_ADMIN = "SuperAdmin"
    ADMIN = "Admin"
    CASHIER = "Cashier"


class AuditAction(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_ATTEMPT_DEACTIVATED = "LOGIN_ATTEMPT_DEACTIVATED"
    LOGIN_ATTEMPT_TENANT_INACTIVE = "LOGIN_ATTEMPT_TENANT_INACTIVE"
    USER_LOGOUT = "USER_LOGOUT"
    USER_REGISTERED = "USER_REGISTERED"
    USER_REGISTERED_EMAIL_FAILED = "USER_REGISTERED_EMAIL_FAILED"
    MFA_SETUP_STARTED = "MFA_SETUP_STARTED"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    MFA_FAILED = "MFA_FAILED"
    MFA_SUCCESS = "MFA_SUCCESS"
    RECOVERY_CODE_SUCCESS = "RECOVERY_CODE_SUCCESS"
    RECOVERY_CODE_FAILED = "RECOVERY_CODE_FAILED"
    REFRESH_REUSE_DETECTED = "REFRESH_REUSE_DETECTED"
    PASSWORD_CHANGE_SUCCESS = "PASSWORD_CHANGE_SUCCESS"
    PASSWORD_CHANGE_FAILED = "PASSWORD_CHANGE_FAILED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_REQUEST_NONEXISTENT = "PASSWORD_RESET_REQUEST_NONEXISTENT"
    PASSWORD_RESET_EMAIL_FAILED = "PASSWORD_RESET_EMAIL_FAILED"
    PASSWORD_RESET_SUCCESS = "PASSWORD_RESET_SUCCESS"
    PASSWORD_RESET_FAILED = "PASSWORD_RESET_FAILED"
    ALL_SESSIONS_REVOKED = "ALL_SESSIONS_REVOKED"
    SPECIFIC_SESSION_REVOKED = "SPECIFIC_SESSION_REVOKED"
    PROFILE_UPDATED = "PROFILE_UPDATED"
    USER_LIST_VIEWED = "USER_LIST_VIEWED"
    ADMIN_USER_UPDATED = "ADMIN_USER_UPDATED"
    ADMIN_USER_DELETED = "ADMIN_USER_DELETED"
    TENANT_CREATED = "TENANT_CREATED"
    TENANT_UPDATED = "TENANT_UPDATED"


@dataclass
class Tenant:
    id: str
    name: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def usable(self) -> bool:
        return self.is_active and self.deleted_at is None


@dataclass
class User:
    id: str
    name: str
    email: str
    password_hash: str
    role: Role = Role.CASHIER
    tenant_id: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: bool = True
    mfa_secret: Optional[str] = None
    mfa_enabled: bool = False
    mfa_recovery_codes: List[str] = field(default_factory=list)
    refresh_token: Optional[str] = None
    token_generation: int = 0
    password_changed_at: Optional[datetime] = None
    password_reset_hash: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None
    # Populated by stores on lookups that attach the tenant row
    tenant: Optional[Tenant] = None


@dataclass
class Session:
    id: str
    user_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    last_active: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            last_active=now,
            created_at=now,
        )


@dataclass
class BlacklistEntry:
    token_digest: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditRecord:
    id: str
    action: AuditAction
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        action: AuditAction,
        user_id: str | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: Dict | None = None,
    ) -> "AuditRecord":
        return cls(
            id=str(uuid.uuid4()),
            action=action,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=dict(metadata or {}),
        )
