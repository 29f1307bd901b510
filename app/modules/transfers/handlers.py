"""
Approval outcome handler for inventory transfers.
"""
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.modules.approvals.handlers import ApprovalHandlerRegistry
from app.modules.approvals.models import ApprovalObjectType, ApprovalRequest, ApprovalStatus
from app.modules.transfers.service import InventoryTransferService


def handle_transfer_approval_outcome(
    db: Session,
    request: ApprovalRequest,
    outcome: ApprovalStatus,
    actor_id: Optional[UUID],
    comments: Optional[str] = None
) -> None:
    InventoryTransferService(db).handle_approval_decision(
        request.object_id, request.tenant_id, request.id, outcome, actor_id, comments
    )


def register_transfer_handlers(registry: ApprovalHandlerRegistry) -> None:
    registry.register(ApprovalObjectType.INVENTORY_TRANSFER, handle_transfer_approval_outcome)
