import logging
from typing import Any, Optional
from uuid import UUID

from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

from app.modules.audit.models import AuditLog, AuditAction

logger = logging.getLogger(__name__)


class AuditService:
    """Append-only audit sink; a failed write never aborts the caller."""

    def __init__(self, db: Session):
        self.db = db

    def create_audit_log(
        self,
        tenant_id: UUID,
        user_id: Optional[UUID],
        action: AuditAction,
        object_table: str,
        object_id: Optional[UUID],
        data: Any = None,
        store_id: Optional[UUID] = None
    ) -> Optional[AuditLog]:
        """
        Write an audit row inside a SAVEPOINT of the caller's transaction.
        Errors are logged and the savepoint rolled back; the business
        transaction carries on.
        """
        self.db.flush()
        try:
            with self.db.begin_nested():
                audit_log = AuditLog(
                    tenant_id=tenant_id,
                    store_id=store_id,
                    user_id=user_id,
                    action=AuditAction(action).value,
                    object_table=object_table,
                    object_id=object_id,
                    data=jsonable_encoder(data) if data is not None else None
                )
                self.db.add(audit_log)
            return audit_log
        except Exception as e:
            logger.error(f"Failed to write audit log for {object_table} {object_id}: {e}", exc_info=True)
            return None
