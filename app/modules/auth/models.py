from sqlalchemy import Column, String, Boolean, ForeignKey, DateTime, JSON, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from uuid import uuid4
from app.database.database import Base
from app.common.mixins import TimestampMixin, utcnow

class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4)
    email = Column(String, unique=True, nullable=False)
    full_name = Column(String(150), nullable=True)
    is_active = Column(Boolean, default=True)
    last_login = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    user_tenants = relationship("UserTenant", back_populates="user", cascade="all, delete-orphan")

class UserTenant(Base, TimestampMixin):
    """Membership of a user in a tenant with the role set used for authorization."""
    __tablename__ = "user_tenants"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    tenant_id = Column(Uuid, nullable=False, index=True)
    roles = Column(JSON, nullable=False, default=list)  # owner, admin, manager, finance, cashier, viewer
    is_active = Column(Boolean, default=True)
    joined_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    user = relationship("User", back_populates="user_tenants")

    __table_args__ = (
        UniqueConstraint("user_id", "tenant_id", name="uq_user_tenant"),
    )
