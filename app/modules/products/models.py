from app.database.database import Base
from sqlalchemy import Column, String, Numeric, UniqueConstraint
from sqlalchemy.orm import relationship
from app.common.mixins import BaseMixin

class Product(Base, BaseMixin):
    __tablename__ = "products"

    name = Column(String(100), nullable=False)
    sku = Column(String(50), nullable=False)
    description = Column(String(255), nullable=True)
    bar_code = Column(String(50), nullable=True)
    price_sale = Column(Numeric(15, 2), nullable=False, default=0)  # selling price
    price_base = Column(Numeric(15, 2), nullable=False, default=0)  # base cost

    # Relationships
    inventory_records = relationship("InventoryRecord", back_populates="product")

    __table_args__ = (
        UniqueConstraint("tenant_id", "sku", name="uq_product_tenant_sku"),
    )
