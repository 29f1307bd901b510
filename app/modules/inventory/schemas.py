from pydantic import BaseModel, Field
from typing import Optional, List
from uuid import UUID
from datetime import datetime
from decimal import Decimal
from enum import Enum

class MovementType(str, Enum):
    IN = "IN"
    OUT = "OUT"
    ADJ = "ADJ"
    TRANSFER = "TRANSFER"

# Inventory record schemas
class InventoryRecordOut(BaseModel):
    id: UUID
    tenant_id: UUID
    store_id: UUID
    product_id: UUID
    quantity_on_hand: Decimal
    quantity_reserved: Decimal
    quantity_available: Decimal
    unit_cost: Decimal
    reorder_point: Optional[Decimal] = None
    last_stock_take_at: Optional[datetime] = None
    last_stock_take_quantity: Optional[Decimal] = None
    created_at: datetime
    updated_at: datetime

    # Joined data
    product_name: Optional[str] = None
    product_sku: Optional[str] = None
    store_name: Optional[str] = None

    model_config = {"from_attributes": True}

class InventoryUpsert(BaseModel):
    quantity_on_hand: Optional[Decimal] = Field(None, ge=0, decimal_places=3)
    unit_cost: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    reorder_point: Optional[Decimal] = Field(None, ge=0, decimal_places=3)

class InventoryAdjust(BaseModel):
    quantity: Decimal = Field(..., decimal_places=3, description="Signed delta: positive = stock-in, negative = stock-out")
    reason: str = Field(..., min_length=1, max_length=50)
    reference: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=255)

class StockTakeCreate(BaseModel):
    actual_quantity: Decimal = Field(..., ge=0, decimal_places=3)
    notes: Optional[str] = Field(None, max_length=255)

# Movement schemas
class InventoryMovementOut(BaseModel):
    id: UUID
    tenant_id: UUID
    store_id: UUID
    product_id: UUID
    quantity: Decimal
    movement_type: str
    reason: Optional[str] = None
    reference: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[UUID] = None
    created_at: datetime

    # Joined data
    product_name: Optional[str] = None
    store_name: Optional[str] = None

    model_config = {"from_attributes": True}

class InventoryMovementList(BaseModel):
    movements: List[InventoryMovementOut]
    total: int
    limit: int
    offset: int
