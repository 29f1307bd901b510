"""
SQLAlchemy models for the approvals module

- ApprovalRule: tenant policy deciding whether an operation needs sign-off
  and the level/role structure of that sign-off
- ApprovalRequest: one multi-level approval of a gated domain object

An ApprovalRequest keeps a copy of the matched rule's levels
(approval_levels) so later edits to the rule only affect future requests.
"""

from app.database.database import Base
from sqlalchemy import Column, String, Text, Integer, DateTime, ForeignKey, Enum, JSON, Uuid, Index
from sqlalchemy.orm import relationship
from uuid import uuid4
from app.common.mixins import BaseMixin, TenantMixin, TimestampMixin
import enum


# ===== ENUMS =====

class ApprovalObjectType(enum.Enum):
    """Domain objects that can be gated by an approval"""
    INVENTORY_TRANSFER = "inventory_transfer"
    INVENTORY_ADJUSTMENT = "inventory_adjustment"
    SALE = "sale"
    REFUND = "refund"


class ApprovalStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ApprovalPriority(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ApprovalDecisionType(enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


# ===== MODELS =====

class ApprovalRule(Base, BaseMixin):
    __tablename__ = "approval_rules"

    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    object_type = Column(Enum(ApprovalObjectType), nullable=False, index=True)
    conditions = Column(JSON, nullable=False)  # ApprovalRuleConditions
    created_by = Column(Uuid, ForeignKey("users.id"), nullable=True)

    # Relationships
    requests = relationship("ApprovalRequest", back_populates="rule")

    __table_args__ = (
        Index("ix_approval_rules_lookup", "tenant_id", "object_type", "is_active"),
    )


class ApprovalRequest(Base, TenantMixin, TimestampMixin):
    """
    Lifecycle: pending -> approved | rejected | cancelled | expired.
    Terminal once status leaves pending.
    """
    __tablename__ = "approval_requests"

    id = Column(Uuid, primary_key=True, default=uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id"), nullable=True, index=True)
    requested_by = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    object_type = Column(Enum(ApprovalObjectType), nullable=False, index=True)
    object_id = Column(Uuid, nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(Enum(ApprovalPriority), nullable=False, default=ApprovalPriority.MEDIUM)
    status = Column(Enum(ApprovalStatus), nullable=False, default=ApprovalStatus.PENDING, index=True)

    approval_rule_id = Column(Uuid, ForeignKey("approval_rules.id"), nullable=True)
    approval_data = Column(JSON, nullable=True)  # amount, store_id, metadata
    approval_levels = Column(JSON, nullable=False, default=list)  # levels copied from the rule

    current_level = Column(Integer, nullable=False, default=1)
    total_levels = Column(Integer, nullable=False, default=1)
    required_approvals = Column(Integer, nullable=False, default=1)
    approved_count = Column(Integer, nullable=False, default=0)
    rejected_count = Column(Integer, nullable=False, default=0)
    approvals = Column(JSON, nullable=False, default=list)  # ordered decision records

    approved_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    cancelled_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    rule = relationship("ApprovalRule", back_populates="requests")
    store = relationship("Store")
    requester = relationship("User", foreign_keys=[requested_by])
