"""
Router for bulk inventory transfers

Mounted before the single-transfer router so /inventory-transfers/bulk is
not read as a transfer id.
"""

from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
from uuid import UUID
from datetime import datetime

from app.common.responses import APIResponse
from app.core.config import settings
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.approvals.models import ApprovalPriority
from app.modules.transfers.bulk import BulkInventoryTransferService
from app.modules.transfers.models import BulkTransferStatus, BulkTransferType
from app.modules.transfers.router import DECISION_ROLES, READ_ROLES, STAFF_ROLES, get_transfer_service
from app.modules.transfers.schemas import BulkTransferAction, BulkTransferCreate, BulkTransferList, BulkTransferOut
from app.modules.transfers.service import InventoryTransferService

bulk_router = APIRouter(
    prefix="/inventory-transfers/bulk",
    tags=["Bulk Inventory Transfers"],
    responses={404: {"description": "Not found"}}
)


def get_bulk_transfer_service(
    transfers: InventoryTransferService = Depends(get_transfer_service)
) -> BulkInventoryTransferService:
    return BulkInventoryTransferService(transfers.db, transfers=transfers)


@bulk_router.post("", response_model=APIResponse[BulkTransferOut], status_code=status.HTTP_201_CREATED)
def create_bulk_transfer(
    bulk_data: BulkTransferCreate,
    service: BulkInventoryTransferService = Depends(get_bulk_transfer_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(STAFF_ROLES))
):
    """
    Create a draft bulk transfer.

    - Every item must be covered by the source store's available stock (409 otherwise)
    - Nothing is reserved until the bulk transfer is approved
    """
    bulk = service.create_bulk_transfer(auth_context.tenant_id, auth_context.user_id, bulk_data)
    return APIResponse(
        data=service.get_bulk_transfer(auth_context.tenant_id, bulk.id),
        message="Bulk inventory transfer created"
    )


@bulk_router.get("", response_model=APIResponse[BulkTransferList])
def list_bulk_transfers(
    status_filter: Optional[List[BulkTransferStatus]] = Query(None, alias="status"),
    source_store_id: Optional[UUID] = Query(None),
    destination_store_id: Optional[UUID] = Query(None),
    transfer_type: Optional[List[BulkTransferType]] = Query(None),
    priority: Optional[List[ApprovalPriority]] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    service: BulkInventoryTransferService = Depends(get_bulk_transfer_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES))
):
    return APIResponse(data=service.list_bulk_transfers(
        auth_context.tenant_id,
        statuses=status_filter,
        source_store_id=source_store_id,
        destination_store_id=destination_store_id,
        transfer_types=transfer_type,
        priorities=priority,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset
    ))


@bulk_router.get("/{bulk_id}", response_model=APIResponse[BulkTransferOut])
def get_bulk_transfer(
    bulk_id: UUID,
    service: BulkInventoryTransferService = Depends(get_bulk_transfer_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES))
):
    return APIResponse(data=service.get_bulk_transfer(auth_context.tenant_id, bulk_id))


@bulk_router.put("/{bulk_id}/submit", response_model=APIResponse[BulkTransferOut])
def submit_bulk_transfer(
    bulk_id: UUID,
    service: BulkInventoryTransferService = Depends(get_bulk_transfer_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(STAFF_ROLES))
):
    service.submit_bulk_transfer(bulk_id, auth_context.tenant_id, auth_context.user_id)
    return APIResponse(
        data=service.get_bulk_transfer(auth_context.tenant_id, bulk_id),
        message="Bulk inventory transfer submitted"
    )


@bulk_router.put("/{bulk_id}/approve", response_model=APIResponse[BulkTransferOut])
def approve_bulk_transfer(
    bulk_id: UUID,
    payload: Optional[BulkTransferAction] = None,
    service: BulkInventoryTransferService = Depends(get_bulk_transfer_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(DECISION_ROLES))
):
    """Approve and open one inventory transfer per item."""
    service.approve_bulk_transfer(
        bulk_id, auth_context.tenant_id, auth_context.user_id, notes=payload.notes if payload else None
    )
    return APIResponse(
        data=service.get_bulk_transfer(auth_context.tenant_id, bulk_id),
        message="Bulk inventory transfer approved"
    )


@bulk_router.put("/{bulk_id}/cancel", response_model=APIResponse[BulkTransferOut])
def cancel_bulk_transfer(
    bulk_id: UUID,
    payload: Optional[BulkTransferAction] = None,
    service: BulkInventoryTransferService = Depends(get_bulk_transfer_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(STAFF_ROLES))
):
    service.cancel_bulk_transfer(
        bulk_id, auth_context.tenant_id, auth_context.user_id, reason=payload.notes if payload else None
    )
    return APIResponse(
        data=service.get_bulk_transfer(auth_context.tenant_id, bulk_id),
        message="Bulk inventory transfer cancelled"
    )
