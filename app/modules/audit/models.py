from app.database.database import Base
from sqlalchemy import Column, String, DateTime, JSON, Uuid, Index
from app.common.mixins import TenantMixin, utcnow
from sqlalchemy.sql import func
from enum import Enum as PyEnum
from uuid import uuid4


class AuditAction(str, PyEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class AuditLog(Base, TenantMixin):
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid4)
    store_id = Column(Uuid, nullable=True)
    user_id = Column(Uuid, nullable=True)
    action = Column(String(10), nullable=False)  # INSERT, UPDATE, DELETE
    object_table = Column(String(64), nullable=False)  # e.g. approval_request
    object_id = Column(Uuid, nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_audit_logs_object", "tenant_id", "object_table", "object_id"),
    )
