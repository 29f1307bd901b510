"""
Router for inventory transfers

Endpoints:
- Create and list transfers, summary statistics, detail
- Approve / reject (through the linked approval request when one is pending)
- Ship / complete / cancel
"""

from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
from uuid import UUID
from datetime import datetime
from sqlalchemy.orm import Session

from app.common.responses import APIResponse
from app.core.config import settings
from app.dependencies.dbDependecies import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.approvals.dependencies import get_approval_service
from app.modules.approvals.models import ApprovalDecisionType
from app.modules.approvals.service import ApprovalService
from app.modules.transfers.models import TransferStatus
from app.modules.transfers.service import InventoryTransferService
from app.modules.transfers.schemas import (
    TransferCreate, TransferDecision, TransferAction, TransferOut, TransferList, TransferStats
)

router = APIRouter(
    prefix="/inventory-transfers",
    tags=["Inventory Transfers"],
    responses={404: {"description": "Not found"}}
)

STAFF_ROLES = ["owner", "admin", "manager", "cashier"]
READ_ROLES = ["owner", "admin", "manager", "finance", "cashier", "viewer"]
DECISION_ROLES = ["owner", "admin", "manager", "finance"]


def get_transfer_service(
    db: Session = Depends(get_db),
    approvals: ApprovalService = Depends(get_approval_service)
) -> InventoryTransferService:
    return InventoryTransferService(db, approvals=approvals)


@router.post("", response_model=APIResponse[TransferOut], status_code=status.HTTP_201_CREATED)
def create_transfer(
    transfer_data: TransferCreate,
    service: InventoryTransferService = Depends(get_transfer_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(STAFF_ROLES))
):
    """
    Request a transfer of stock between two stores.

    - Fails with 409 when the source store cannot cover the quantity
    - Starts approved (and reserved) when no approval rule applies
    """
    transfer = service.create_transfer(auth_context.tenant_id, auth_context.user_id, transfer_data)
    return APIResponse(
        data=service.get_transfer(auth_context.tenant_id, transfer.id),
        message="Inventory transfer created"
    )


@router.get("", response_model=APIResponse[TransferList])
def list_transfers(
    status_filter: Optional[List[TransferStatus]] = Query(None, alias="status"),
    source_store_id: Optional[UUID] = Query(None),
    destination_store_id: Optional[UUID] = Query(None),
    product_id: Optional[UUID] = Query(None),
    requested_by: Optional[UUID] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    service: InventoryTransferService = Depends(get_transfer_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES))
):
    return APIResponse(data=service.list_transfers(
        auth_context.tenant_id,
        statuses=status_filter,
        source_store_id=source_store_id,
        destination_store_id=destination_store_id,
        product_id=product_id,
        requested_by=requested_by,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset
    ))


@router.get("/stats/summary", response_model=APIResponse[TransferStats])
def get_transfer_stats(
    service: InventoryTransferService = Depends(get_transfer_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES))
):
    return APIResponse(data=service.get_transfer_stats(auth_context.tenant_id))


@router.get("/{transfer_id}", response_model=APIResponse[TransferOut])
def get_transfer(
    transfer_id: UUID,
    service: InventoryTransferService = Depends(get_transfer_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(READ_ROLES))
):
    return APIResponse(data=service.get_transfer(auth_context.tenant_id, transfer_id))


@router.put("/{transfer_id}/approve", response_model=APIResponse[TransferOut])
def approve_transfer(
    transfer_id: UUID,
    payload: Optional[TransferDecision] = None,
    service: InventoryTransferService = Depends(get_transfer_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(DECISION_ROLES))
):
    service.submit_decision(
        transfer_id, auth_context.tenant_id, auth_context.user_id,
        ApprovalDecisionType.APPROVED, payload.comments if payload else None
    )
    return APIResponse(data=service.get_transfer(auth_context.tenant_id, transfer_id), message="Approval recorded")


@router.put("/{transfer_id}/reject", response_model=APIResponse[TransferOut])
def reject_transfer(
    transfer_id: UUID,
    payload: Optional[TransferDecision] = None,
    service: InventoryTransferService = Depends(get_transfer_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(DECISION_ROLES))
):
    service.submit_decision(
        transfer_id, auth_context.tenant_id, auth_context.user_id,
        ApprovalDecisionType.REJECTED, payload.comments if payload else None
    )
    return APIResponse(data=service.get_transfer(auth_context.tenant_id, transfer_id), message="Rejection recorded")


@router.put("/{transfer_id}/ship", response_model=APIResponse[TransferOut])
def ship_transfer(
    transfer_id: UUID,
    service: InventoryTransferService = Depends(get_transfer_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(STAFF_ROLES))
):
    service.ship_transfer(transfer_id, auth_context.tenant_id, auth_context.user_id)
    return APIResponse(data=service.get_transfer(auth_context.tenant_id, transfer_id), message="Inventory transfer shipped")


@router.put("/{transfer_id}/complete", response_model=APIResponse[TransferOut])
def complete_transfer(
    transfer_id: UUID,
    service: InventoryTransferService = Depends(get_transfer_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(STAFF_ROLES))
):
    service.complete_transfer(transfer_id, auth_context.tenant_id, auth_context.user_id)
    return APIResponse(data=service.get_transfer(auth_context.tenant_id, transfer_id), message="Inventory transfer completed")


@router.put("/{transfer_id}/cancel", response_model=APIResponse[TransferOut])
def cancel_transfer(
    transfer_id: UUID,
    payload: Optional[TransferAction] = None,
    service: InventoryTransferService = Depends(get_transfer_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(STAFF_ROLES))
):
    service.cancel_transfer(
        transfer_id, auth_context.tenant_id, auth_context.user_id, notes=payload.notes if payload else None
    )
    return APIResponse(data=service.get_transfer(auth_context.tenant_id, transfer_id), message="Inventory transfer cancelled")
