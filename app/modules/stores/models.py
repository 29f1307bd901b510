from app.database.database import Base
from sqlalchemy import Column, String, UniqueConstraint
from sqlalchemy.orm import relationship
from app.common.mixins import BaseMixin

class Store(Base, BaseMixin):
    __tablename__ = "stores"

    name = Column(String(100), nullable=False)
    code = Column(String(20), nullable=False)
    address = Column(String(255), nullable=True)
    phone_number = Column(String(20), nullable=True)

    # Relationships - using strings to avoid circular imports
    inventory_records = relationship("InventoryRecord", back_populates="store")

    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_store_tenant_code"),
    )
