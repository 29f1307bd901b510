"""
SQLAlchemy models for inventory transfers between stores of a tenant

Lifecycle:
    pending -> approved -> in_transit -> completed
    pending -> rejected
    pending | approved -> cancelled

While a transfer is approved or in_transit its quantity is held in the
source store's quantity_reserved.
"""

from app.database.database import Base
from sqlalchemy import Column, String, Text, Integer, Numeric, DateTime, ForeignKey, Enum, Uuid, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
from app.modules.approvals.models import ApprovalPriority
import enum


class TransferStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_TRANSIT = "in_transit"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InventoryTransfer(Base, TenantMixin, TimestampMixin):
    __tablename__ = "inventory_transfers"

    id = Column(Uuid, primary_key=True, default=uuid4)
    transfer_number = Column(String(30), nullable=False, index=True)  # TRF-YYYYMMDD-NNNN
    source_store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False, index=True)
    destination_store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False, index=True)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Numeric(12, 3), nullable=False)
    unit_cost = Column(Numeric(10, 2), nullable=False, default=0)  # copied from source inventory at creation
    status = Column(Enum(TransferStatus), nullable=False, default=TransferStatus.PENDING, index=True)
    notes = Column(Text, nullable=True)
    reference = Column(String(100), nullable=True)
    approval_request_id = Column(Uuid, ForeignKey("approval_requests.id"), nullable=True, index=True)  # the request opened at creation

    requested_by = Column(Uuid, ForeignKey("users.id"), nullable=False)
    approved_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    shipped_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    received_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    cancelled_by = Column(Uuid, ForeignKey("users.id"), nullable=True)

    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    source_store = relationship("Store", foreign_keys=[source_store_id])
    destination_store = relationship("Store", foreign_keys=[destination_store_id])
    product = relationship("Product")
    requester = relationship("User", foreign_keys=[requested_by])

    __table_args__ = (
        UniqueConstraint("tenant_id", "transfer_number", name="uq_transfer_tenant_number"),
        CheckConstraint("quantity > 0", name="ck_transfer_quantity_positive"),
        CheckConstraint("source_store_id <> destination_store_id", name="ck_transfer_distinct_stores"),
    )


class BulkTransferStatus(enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    CANCELLED = "cancelled"


class BulkTransferType(enum.Enum):
    REPLENISHMENT = "replenishment"
    ALLOCATION = "allocation"
    RETURN = "return"
    ADJUSTMENT = "adjustment"
    EMERGENCY = "emergency"


class BulkInventoryTransfer(Base, TenantMixin, TimestampMixin):
    """
    Several products moving between the same two stores.

    draft -> pending -> approved, with cancellation from any of the three.
    Approval opens one InventoryTransfer per item; those carry the
    reservations and approval requests, the bulk record only groups them.
    """
    __tablename__ = "bulk_inventory_transfers"

    id = Column(Uuid, primary_key=True, default=uuid4)
    bulk_transfer_number = Column(String(30), nullable=False, index=True)  # BT-YYYYMMDD-NNNN
    source_store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False, index=True)
    destination_store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(Enum(BulkTransferStatus), nullable=False, default=BulkTransferStatus.DRAFT, index=True)
    priority = Column(Enum(ApprovalPriority), nullable=False, default=ApprovalPriority.MEDIUM)
    transfer_type = Column(Enum(BulkTransferType), nullable=False, default=BulkTransferType.REPLENISHMENT)
    scheduled_ship_date = Column(DateTime(timezone=True), nullable=True)
    scheduled_receive_date = Column(DateTime(timezone=True), nullable=True)
    total_items = Column(Integer, nullable=False, default=0)
    total_quantity = Column(Numeric(12, 3), nullable=False, default=0)
    total_value = Column(Numeric(12, 2), nullable=False, default=0)
    notes = Column(Text, nullable=True)
    reference = Column(String(100), nullable=True)

    requested_by = Column(Uuid, ForeignKey("users.id"), nullable=False)
    approved_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    cancelled_by = Column(Uuid, ForeignKey("users.id"), nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    source_store = relationship("Store", foreign_keys=[source_store_id])
    destination_store = relationship("Store", foreign_keys=[destination_store_id])
    requester = relationship("User", foreign_keys=[requested_by])
    items = relationship(
        "BulkInventoryTransferItem",
        back_populates="bulk_transfer",
        cascade="all, delete-orphan",
        order_by="BulkInventoryTransferItem.line_number"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "bulk_transfer_number", name="uq_bulk_transfer_tenant_number"),
        CheckConstraint("source_store_id <> destination_store_id", name="ck_bulk_transfer_distinct_stores"),
    )


class BulkInventoryTransferItem(Base):
    __tablename__ = "bulk_inventory_transfer_items"

    id = Column(Uuid, primary_key=True, default=uuid4)
    bulk_transfer_id = Column(Uuid, ForeignKey("bulk_inventory_transfers.id", ondelete="CASCADE"), nullable=False, index=True)
    line_number = Column(Integer, nullable=False)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False)
    quantity = Column(Numeric(12, 3), nullable=False)
    unit_cost = Column(Numeric(10, 2), nullable=False, default=0)
    line_total = Column(Numeric(12, 2), nullable=False, default=0)
    notes = Column(Text, nullable=True)
    transfer_id = Column(Uuid, ForeignKey("inventory_transfers.id"), nullable=True)  # set on approval

    # Relationships
    bulk_transfer = relationship("BulkInventoryTransfer", back_populates="items")
    product = relationship("Product")
    transfer = relationship("InventoryTransfer")

    __table_args__ = (
        UniqueConstraint("bulk_transfer_id", "product_id", name="uq_bulk_item_product"),
        CheckConstraint("quantity > 0", name="ck_bulk_item_quantity_positive"),
    )
