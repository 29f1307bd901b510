from app.database.database import Base
from sqlalchemy import Column, String, Numeric, ForeignKey, DateTime, Uuid, CheckConstraint, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.ext.hybrid import hybrid_property
from app.common.mixins import BaseMixin, TenantMixin, TimestampMixin
from uuid import uuid4


class InventoryRecord(Base, BaseMixin):
    """Per (tenant, store, product) stock ledger row."""
    __tablename__ = "inventories"

    store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False, index=True)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False, index=True)
    quantity_on_hand = Column(Numeric(12, 3), nullable=False, default=0)
    quantity_reserved = Column(Numeric(12, 3), nullable=False, default=0)
    unit_cost = Column(Numeric(10, 2), nullable=False, default=0)
    reorder_point = Column(Numeric(12, 3), nullable=True)
    last_stock_take_at = Column(DateTime(timezone=True), nullable=True)
    last_stock_take_quantity = Column(Numeric(12, 3), nullable=True)

    # Relationships
    store = relationship("Store", back_populates="inventory_records")
    product = relationship("Product", back_populates="inventory_records")

    __table_args__ = (
        UniqueConstraint("tenant_id", "store_id", "product_id", name="uq_inventory_tenant_store_product"),
        CheckConstraint("quantity_reserved >= 0", name="ck_inventory_reserved_non_negative"),
        CheckConstraint("quantity_on_hand >= quantity_reserved", name="ck_inventory_available_non_negative"),
    )

    @hybrid_property
    def quantity_available(self):
        return self.quantity_on_hand - self.quantity_reserved


class InventoryMovement(Base, TenantMixin, TimestampMixin):
    """One row per change of quantity_on_hand."""
    __tablename__ = "inventory_movements"

    id = Column(Uuid, primary_key=True, default=uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False, index=True)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Numeric(12, 3), nullable=False)  # positive = IN, negative = OUT
    movement_type = Column(String(20), nullable=False)  # IN, OUT, ADJ, TRANSFER
    reason = Column(String(50), nullable=True)
    reference = Column(String(100), nullable=True)
    notes = Column(String(255), nullable=True)
    created_by = Column(Uuid, ForeignKey("users.id"), nullable=True)

    # Relationships
    store = relationship("Store")
    product = relationship("Product")
