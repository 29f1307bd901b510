from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from uuid import UUID
from sqlalchemy.orm import Session

from app.common.responses import APIResponse
from app.core.config import settings
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.dependencies.dbDependecies import get_db, db_dependency
from app.modules.inventory.service import InventoryService
from app.modules.inventory.schemas import (
    InventoryRecordOut, InventoryUpsert, InventoryAdjust, StockTakeCreate,
    InventoryMovementList, MovementType
)

inventory_router = APIRouter(prefix="/inventory", tags=["Inventory"])

READ_ROLES = ["owner", "admin", "manager", "finance", "cashier", "viewer"]
WRITE_ROLES = ["owner", "admin", "manager"]

@inventory_router.get("/stores/{store_id}", response_model=APIResponse[List[InventoryRecordOut]])
def get_store_inventory(
    store_id: UUID,
    low_stock_only: bool = Query(False),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES))
):
    """List the inventory ledger of a store."""
    service = InventoryService(db)
    records = service.list_store_inventory(auth_context.tenant_id, store_id, low_stock_only)
    return APIResponse(data=records)

@inventory_router.get("/stores/{store_id}/products/{product_id}", response_model=APIResponse[InventoryRecordOut])
def get_inventory(
    store_id: UUID,
    product_id: UUID,
    db: db_dependency,
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES))
):
    """Get the ledger row for a product at a store."""
    service = InventoryService(db)
    return APIResponse(data=service.get_inventory(auth_context.tenant_id, store_id, product_id))

@inventory_router.put("/stores/{store_id}/products/{product_id}", response_model=APIResponse[InventoryRecordOut])
def upsert_inventory(
    store_id: UUID,
    product_id: UUID,
    payload: InventoryUpsert,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(WRITE_ROLES))
):
    """Create or update the ledger row for a product at a store."""
    service = InventoryService(db)
    record = service.create_or_update(
        auth_context.tenant_id,
        store_id,
        product_id,
        quantity_on_hand=payload.quantity_on_hand,
        unit_cost=payload.unit_cost,
        reorder_point=payload.reorder_point,
        user_id=auth_context.user_id
    )
    return APIResponse(data=service.record_to_output(record), message="Inventory saved")

@inventory_router.post("/stores/{store_id}/products/{product_id}/adjust", response_model=APIResponse[InventoryRecordOut])
def adjust_inventory(
    store_id: UUID,
    product_id: UUID,
    payload: InventoryAdjust,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(WRITE_ROLES))
):
    """Apply a signed stock adjustment (manager roles only)."""
    service = InventoryService(db)
    record = service.adjust(
        auth_context.tenant_id,
        store_id,
        product_id,
        payload.quantity,
        payload.reason,
        reference=payload.reference,
        notes=payload.notes,
        user_id=auth_context.user_id
    )
    return APIResponse(data=service.record_to_output(record), message="Inventory adjusted")

@inventory_router.post("/stores/{store_id}/products/{product_id}/stock-take", response_model=APIResponse[InventoryRecordOut])
def stock_take(
    store_id: UUID,
    product_id: UUID,
    payload: StockTakeCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(WRITE_ROLES))
):
    """Record a physical count for a product at a store."""
    service = InventoryService(db)
    record = service.stock_take(
        auth_context.tenant_id,
        store_id,
        product_id,
        payload.actual_quantity,
        notes=payload.notes,
        user_id=auth_context.user_id
    )
    return APIResponse(data=service.record_to_output(record), message="Stock take recorded")

@inventory_router.get("/movements", response_model=APIResponse[InventoryMovementList])
def get_movements(
    store_id: Optional[UUID] = Query(None),
    product_id: Optional[UUID] = Query(None),
    movement_type: Optional[MovementType] = Query(None),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES))
):
    """Get inventory movements with filters."""
    service = InventoryService(db)
    return APIResponse(data=service.list_movements(
        auth_context.tenant_id,
        store_id=store_id,
        product_id=product_id,
        movement_type=movement_type,
        limit=limit,
        offset=offset
    ))
