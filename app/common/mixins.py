"""
Common mixins for multi-tenant models
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Boolean, Uuid
from sqlalchemy.sql import func
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TenantMixin:
    """Mixin for multi-tenant models that adds tenant_id and ensures tenant isolation"""

    tenant_id = Column(Uuid, nullable=False, index=True)


class TimestampMixin:
    """Mixin for models that need timestamp tracking"""

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class BaseMixin(TenantMixin, TimestampMixin):
    """Combines tenant and timestamp functionality for most business models"""

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
