from __future__ import annotations

from typing import Any, Optional, Protocol

from tenantguard.logging import get_logger
from tenantguard.storage.models import AuditAction, AuditRecord

logger = get_logger(__name__)


class AuditSink(Protocol):
    def append_audit_record(self, record: AuditRecord) -> None: ...


class AuditTrail:
    """Best-effort append-only audit log.

    A failed write is logged and dropped; it never fails the calling operation.
    """

    def __init__(self, store: AuditSink) -> None:
        self.store = store

    def record(
        self,
        action: AuditAction,
        user_id: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        **metadata: Any,
    ) -> Optional[AuditRecord]:
        entry = AuditRecord.new(
            action,
            user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata,
        )
        try:
            self.store.append_audit_record(entry)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=action.value,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        logger.info("audit_recorded", action=action.value, user_id=user_id)
        return entry
