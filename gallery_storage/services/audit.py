"""
Audit recorder: append-only log of connection, file, share, metadata, sync
and error events.

Each entry is written in its own short-lived session so a failing audit
write can neither abort nor roll back the operation it documents. Failures
go to this module's logger instead and are never re-raised.
"""
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from gallery_storage.models import AuditLog

logger = logging.getLogger(__name__)


class AuditRecorder:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def log_connection(
        self,
        user_id: str,
        provider: str,
        action: str,
        metadata: dict | None = None,
        ip_address: str | None = None,
    ) -> None:
        """action: connected | disconnected | refreshed."""
        self._log(
            user_id=user_id,
            action=f"storage_{action}",
            resource_type="storage_connection",
            resource_id=provider,
            metadata={"provider": provider, **(metadata or {})},
            ip_address=ip_address,
        )

    def log_file_operation(
        self,
        user_id: str,
        file_id: str,
        operation: str,
        metadata: dict | None = None,
        ip_address: str | None = None,
    ) -> None:
        """operation: upload | delete | view | download."""
        self._log(
            user_id=user_id,
            action=f"file_{operation}",
            resource_type="file",
            resource_id=file_id,
            metadata=metadata,
            ip_address=ip_address,
        )

    def log_share_operation(
        self,
        user_id: str | None,
        gallery_id: int,
        action: str,
        share_link_id: int,
        metadata: dict | None = None,
        ip_address: str | None = None,
    ) -> None:
        """action: created | revoked | accessed. The share token itself is never stored here."""
        self._log(
            user_id=user_id,
            action=f"share_{action}",
            resource_type="share_link",
            resource_id=str(share_link_id),
            metadata={"gallery_id": gallery_id, **(metadata or {})},
            ip_address=ip_address,
        )

    def log_metadata_operation(
        self,
        user_id: str,
        photo_id: int,
        operation: str,
        metadata: dict | None = None,
        ip_address: str | None = None,
    ) -> None:
        """operation: tags_updated | visibility_changed | sort_order_changed | deleted."""
        self._log(
            user_id=user_id,
            action=f"metadata_{operation}",
            resource_type="photo",
            resource_id=str(photo_id),
            metadata=metadata,
            ip_address=ip_address,
        )

    def log_gallery_operation(
        self,
        user_id: str,
        gallery_id: int,
        operation: str,
        metadata: dict | None = None,
    ) -> None:
        self._log(
            user_id=user_id,
            action=f"gallery_{operation}",
            resource_type="gallery",
            resource_id=str(gallery_id),
            metadata=metadata,
        )

    def log_error(
        self,
        context: str,
        error: BaseException,
        metadata: dict | None = None,
        user_id: str | None = None,
        ip_address: str | None = None,
    ) -> None:
        """Record the error type and message only; never tracebacks or credentials."""
        self._log(
            user_id=user_id,
            action="error",
            resource_type="system",
            resource_id=context,
            metadata={
                **(metadata or {}),
                "error_type": type(error).__name__,
                "error_message": str(error)[:500],
            },
            ip_address=ip_address,
        )

    def log_conflict(self, user_id: str, conflict: dict) -> None:
        """conflict carries at least type and details; gallery_id / photo_id when known."""
        self._log(
            user_id=user_id,
            action="sync_conflict",
            resource_type="sync",
            resource_id=conflict.get("type"),
            metadata=conflict,
        )

    def _log(
        self,
        *,
        action: str,
        resource_type: str,
        user_id: str | None = None,
        resource_id: str | None = None,
        metadata: dict | None = None,
        ip_address: str | None = None,
    ) -> None:
        entry = AuditLog(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=metadata,
            ip_address=ip_address,
        )
        try:
            with self.session_factory() as db:
                db.add(entry)
                db.commit()
        except Exception:
            # Audit writes never abort the operation they document
            logger.exception(
                "Failed to write audit log: action=%s resource=%s/%s user=%s",
                action,
                resource_type,
                resource_id,
                user_id,
            )

    # --- Queries ---

    def get_user_logs(self, user_id: str, limit: int = 100, offset: int = 0) -> list[AuditLog]:
        with self.session_factory() as db:
            return self._fetch(db, select(AuditLog).where(AuditLog.user_id == user_id), limit, offset)

    def get_logs_by_action(self, action: str, limit: int = 100, offset: int = 0) -> list[AuditLog]:
        with self.session_factory() as db:
            return self._fetch(db, select(AuditLog).where(AuditLog.action == action), limit, offset)

    def get_resource_logs(self, resource_type: str, resource_id: str, limit: int = 100) -> list[AuditLog]:
        with self.session_factory() as db:
            stmt = select(AuditLog).where(
                AuditLog.resource_type == resource_type,
                AuditLog.resource_id == resource_id,
            )
            return self._fetch(db, stmt, limit, 0)

    @staticmethod
    def _fetch(db: Session, stmt: Any, limit: int, offset: int) -> list[AuditLog]:
        stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).offset(offset)
        rows = list(db.scalars(stmt))
        db.expunge_all()
        return rows
