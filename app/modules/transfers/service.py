"""
Inventory transfer state machine.

Responsibilities:
- Create transfers (validation, unit cost copy, approval rule check, number)
- Approve / reject / ship / complete / cancel with row-locked, status-guarded
  transitions
- Apply approval outcomes delivered through the approval handler registry
- Listing and summary statistics

Every transition locks the transfer row with its expected status in the WHERE
clause, so a repeated or concurrent call finds no row and fails with
InvalidStateError instead of touching the ledger twice.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.common.mixins import utcnow
from app.core.config import settings
from app.core.exceptions import (
    DuplicateRecordError, InsufficientInventoryError, InvalidStateError, NotFoundError, ValidationError
)
from app.database.database import transaction
from app.modules.approvals.models import ApprovalDecisionType, ApprovalObjectType, ApprovalRequest, ApprovalStatus
from app.modules.approvals.schemas import ApprovalData, ApprovalDecisionIn, ApprovalRequestCreate
from app.modules.approvals.service import ApprovalService
from app.modules.inventory.schemas import MovementType
from app.modules.inventory.service import InventoryService, to_quantity
from app.modules.transfers.models import InventoryTransfer, TransferStatus
from app.modules.transfers.schemas import TransferCreate, TransferList, TransferOut, TransferStats

logger = logging.getLogger(__name__)

TRANSFER_REASON = "transfer"


def daily_number_prefix(code: str, now: Optional[datetime] = None) -> str:
    """Prefix CODE-YYYYMMDD- for the current day in TRANSFER_NUMBER_TIMEZONE."""
    local_now = (now or utcnow()).astimezone(ZoneInfo(settings.TRANSFER_NUMBER_TIMEZONE))
    return f"{code}-{local_now.strftime('%Y%m%d')}-"


class InventoryTransferService:
    """Service for inventory transfers between stores."""

    def __init__(self, db: Session, approvals: Optional[ApprovalService] = None):
        self.db = db
        self.inventory = InventoryService(db)
        self.approvals = approvals or ApprovalService(db)

    # ===== NUMBERING =====

    def _transfer_number_prefix(self, now: Optional[datetime] = None) -> str:
        return daily_number_prefix(settings.TRANSFER_NUMBER_PREFIX, now)

    def _number_exists(self, tenant_id: UUID, transfer_number: str) -> bool:
        return self.db.query(InventoryTransfer.id).filter(
            InventoryTransfer.tenant_id == tenant_id,
            InventoryTransfer.transfer_number == transfer_number
        ).first() is not None

    def _insert_with_number(self, transfer: InventoryTransfer) -> InventoryTransfer:
        """
        Assign TRF-YYYYMMDD-NNNN and insert. NNNN starts at today's count + 1
        and moves up on every collision, up to TRANSFER_NUMBER_MAX_RETRIES.
        """
        prefix = self._transfer_number_prefix()
        todays_count = self.db.query(func.count(InventoryTransfer.id)).filter(
            InventoryTransfer.tenant_id == transfer.tenant_id,
            InventoryTransfer.transfer_number.like(f"{prefix}%")
        ).scalar() or 0

        sequence = todays_count + 1
        for _ in range(settings.TRANSFER_NUMBER_MAX_RETRIES):
            transfer_number = f"{prefix}{sequence:04d}"
            sequence += 1
            if self._number_exists(transfer.tenant_id, transfer_number):
                continue
            transfer.transfer_number = transfer_number
            try:
                with self.db.begin_nested():
                    self.db.add(transfer)
                return transfer
            except IntegrityError:
                logger.warning(f"Transfer number collision on {transfer_number}, retrying")

        raise DuplicateRecordError(
            "Could not allocate a unique transfer number",
            {"prefix": prefix, "attempts": settings.TRANSFER_NUMBER_MAX_RETRIES}
        )

    # ===== LOOKUPS =====

    def get_transfer_record(self, tenant_id: UUID, transfer_id: UUID) -> InventoryTransfer:
        transfer = self.db.query(InventoryTransfer).filter(
            InventoryTransfer.tenant_id == tenant_id,
            InventoryTransfer.id == transfer_id
        ).first()
        if not transfer:
            raise NotFoundError("Inventory transfer", transfer_id)
        return transfer

    def _lock_transfer(
        self,
        tenant_id: UUID,
        transfer_id: UUID,
        allowed: Sequence[TransferStatus],
        action: str
    ) -> InventoryTransfer:
        transfer = self.db.query(InventoryTransfer).populate_existing().filter(
            InventoryTransfer.tenant_id == tenant_id,
            InventoryTransfer.id == transfer_id,
            InventoryTransfer.status.in_(allowed)
        ).with_for_update().first()
        if transfer is None:
            current = self.get_transfer_record(tenant_id, transfer_id)
            raise InvalidStateError(
                f"Cannot {action} a transfer that is {current.status.value}",
                current_status=current.status.value
            )
        return transfer

    # ===== CREATE =====

    def create_transfer(self, tenant_id: UUID, requested_by: UUID, transfer_data: TransferCreate) -> InventoryTransfer:
        """
        Create a transfer. With no rule requiring approval the transfer starts
        approved and its quantity is reserved at the source right away;
        otherwise it starts pending with a linked approval request.
        """
        if transfer_data.source_store_id == transfer_data.destination_store_id:
            raise ValidationError("Source and destination stores must be different")
        quantity = to_quantity(transfer_data.quantity)
        if quantity <= 0:
            raise ValidationError("Transfer quantity must be greater than zero")

        with transaction(self.db):
            self.inventory.get_store(tenant_id, transfer_data.source_store_id)
            self.inventory.get_store(tenant_id, transfer_data.destination_store_id)
            self.inventory.get_product(tenant_id, transfer_data.product_id)

            source = self.inventory.find_record(tenant_id, transfer_data.source_store_id, transfer_data.product_id)
            available = source.quantity_available if source else Decimal("0")
            if source is None or available < quantity:
                raise InsufficientInventoryError(available, quantity)

            unit_cost = source.unit_cost or Decimal("0")
            approval_data = ApprovalData(
                amount=(unit_cost * quantity).quantize(Decimal("0.01")),
                store_id=transfer_data.source_store_id,
                metadata={
                    "product_id": str(transfer_data.product_id),
                    "destination_store_id": str(transfer_data.destination_store_id),
                    "quantity": str(quantity),
                }
            )
            rule = self.approvals.find_applicable_rule(
                tenant_id, ApprovalObjectType.INVENTORY_TRANSFER, approval_data, transfer_data.source_store_id
            )
            requires_approval = ApprovalService.rule_requires_approval(rule)

            now = utcnow()
            transfer = InventoryTransfer(
                tenant_id=tenant_id,
                source_store_id=transfer_data.source_store_id,
                destination_store_id=transfer_data.destination_store_id,
                product_id=transfer_data.product_id,
                quantity=quantity,
                unit_cost=unit_cost,
                notes=transfer_data.notes,
                reference=transfer_data.reference,
                requested_by=requested_by,
                status=TransferStatus.PENDING if requires_approval else TransferStatus.APPROVED,
                approved_by=None if requires_approval else requested_by,
                approved_at=None if requires_approval else now
            )
            self._insert_with_number(transfer)

            if requires_approval:
                request = self.approvals.create_approval_request(
                    tenant_id,
                    requested_by,
                    ApprovalRequestCreate(
                        object_type=ApprovalObjectType.INVENTORY_TRANSFER,
                        object_id=transfer.id,
                        title=f"Inventory transfer {transfer.transfer_number}",
                        description=transfer_data.notes,
                        priority=transfer_data.priority,
                        store_id=transfer_data.source_store_id,
                        approval_data=approval_data
                    ),
                    rule=rule
                )
                transfer.approval_request_id = request.id
                self.db.flush()
            else:
                self.inventory.reserve(tenant_id, transfer.source_store_id, transfer.product_id, quantity)

        if requires_approval:
            logger.info(f"Inventory transfer created pending approval: {transfer.transfer_number}")
        else:
            logger.info(f"Inventory transfer created and auto-approved: {transfer.transfer_number}")
        return transfer

    # ===== TRANSITIONS =====

    def approve_transfer(self, transfer_id: UUID, tenant_id: UUID, approved_by: UUID) -> InventoryTransfer:
        """pending -> approved; reserves the quantity at the source store."""
        with transaction(self.db):
            transfer = self._lock_transfer(tenant_id, transfer_id, [TransferStatus.PENDING], "approve")
            self.inventory.reserve(tenant_id, transfer.source_store_id, transfer.product_id, transfer.quantity)
            transfer.status = TransferStatus.APPROVED
            transfer.approved_by = approved_by
            transfer.approved_at = utcnow()
            self.db.flush()

        logger.info(f"Inventory transfer approved: {transfer.transfer_number}")
        return transfer

    def reject_transfer(
        self,
        transfer_id: UUID,
        tenant_id: UUID,
        approved_by: Optional[UUID],
        notes: Optional[str] = None
    ) -> InventoryTransfer:
        """pending -> rejected; nothing was reserved so the ledger is untouched."""
        with transaction(self.db):
            transfer = self._lock_transfer(tenant_id, transfer_id, [TransferStatus.PENDING], "reject")
            transfer.status = TransferStatus.REJECTED
            transfer.approved_by = approved_by
            transfer.rejected_at = utcnow()
            if notes:
                transfer.notes = notes
            self.db.flush()

        logger.info(f"Inventory transfer rejected: {transfer.transfer_number}")
        return transfer

    def ship_transfer(self, transfer_id: UUID, tenant_id: UUID, user_id: UUID) -> InventoryTransfer:
        """approved -> in_transit; the reservation keeps holding the stock."""
        with transaction(self.db):
            transfer = self._lock_transfer(tenant_id, transfer_id, [TransferStatus.APPROVED], "ship")
            transfer.status = TransferStatus.IN_TRANSIT
            transfer.shipped_by = user_id
            transfer.shipped_at = utcnow()
            self.db.flush()

        logger.info(f"Inventory transfer shipped: {transfer.transfer_number}")
        return transfer

    def complete_transfer(self, transfer_id: UUID, tenant_id: UUID, user_id: UUID) -> InventoryTransfer:
        """
        in_transit -> completed. Consumes the source reservation (reserved and
        on-hand both drop) and adds the quantity at the destination, creating
        the destination ledger row with the transfer's unit cost if needed.
        """
        with transaction(self.db):
            transfer = self._lock_transfer(tenant_id, transfer_id, [TransferStatus.IN_TRANSIT], "complete")

            self.inventory.commit(
                tenant_id, transfer.source_store_id, transfer.product_id, transfer.quantity,
                reason=TRANSFER_REASON, reference=transfer.transfer_number, user_id=user_id,
                movement_type=MovementType.TRANSFER
            )

            destination = self.inventory.find_record(
                tenant_id, transfer.destination_store_id, transfer.product_id, for_update=True
            )
            if destination is None:
                self.inventory.create_or_update(
                    tenant_id, transfer.destination_store_id, transfer.product_id,
                    quantity_on_hand=0, unit_cost=transfer.unit_cost, expect_new=True, user_id=user_id
                )
            self.inventory.adjust(
                tenant_id, transfer.destination_store_id, transfer.product_id, transfer.quantity,
                reason=TRANSFER_REASON, reference=transfer.transfer_number, user_id=user_id,
                movement_type=MovementType.TRANSFER
            )

            transfer.status = TransferStatus.COMPLETED
            transfer.received_by = user_id
            transfer.received_at = utcnow()
            self.db.flush()

        logger.info(f"Inventory transfer completed: {transfer.transfer_number}")
        return transfer

    def cancel_transfer(
        self,
        transfer_id: UUID,
        tenant_id: UUID,
        user_id: Optional[UUID],
        notes: Optional[str] = None,
        cancel_approval: bool = True
    ) -> InventoryTransfer:
        """
        pending | approved -> cancelled. An approved transfer releases exactly
        its reserved quantity; a pending one also cancels its pending approval
        request unless cancel_approval is False.
        """
        with transaction(self.db):
            transfer = self._lock_transfer(
                tenant_id, transfer_id, [TransferStatus.PENDING, TransferStatus.APPROVED], "cancel"
            )

            if transfer.status == TransferStatus.APPROVED:
                self.inventory.release(tenant_id, transfer.source_store_id, transfer.product_id, transfer.quantity)
            elif cancel_approval:
                linked = self._pending_request(transfer)
                if linked:
                    self.approvals.cancel_approval_request(
                        linked.id, tenant_id, user_id or transfer.requested_by,
                        reason=notes or "Inventory transfer cancelled", notify=False, authorize=False
                    )

            transfer.status = TransferStatus.CANCELLED
            transfer.cancelled_by = user_id
            transfer.cancelled_at = utcnow()
            if notes:
                transfer.notes = notes
            self.db.flush()

        logger.info(f"Inventory transfer cancelled: {transfer.transfer_number}")
        return transfer

    # ===== APPROVAL COORDINATION =====

    def _pending_request(self, transfer: InventoryTransfer) -> Optional[ApprovalRequest]:
        if transfer.approval_request_id is None:
            return None
        request = self.approvals.get_approval_request(transfer.tenant_id, transfer.approval_request_id)
        return request if request.status == ApprovalStatus.PENDING else None

    def handle_approval_decision(
        self,
        transfer_id: UUID,
        tenant_id: UUID,
        request_id: UUID,
        outcome: ApprovalStatus,
        approver_id: Optional[UUID],
        comments: Optional[str] = None
    ) -> Optional[InventoryTransfer]:
        """
        Apply the terminal outcome of the transfer's approval request.
        Outcomes of any other request naming this transfer are ignored.
        """
        transfer = self.get_transfer_record(tenant_id, transfer_id)
        if transfer.approval_request_id != request_id:
            logger.warning(
                f"Approval {outcome.value} from request {request_id} ignored: transfer "
                f"{transfer.transfer_number} is governed by request {transfer.approval_request_id}"
            )
            return transfer

        if outcome == ApprovalStatus.APPROVED:
            return self.approve_transfer(transfer_id, tenant_id, approver_id)
        if outcome == ApprovalStatus.REJECTED:
            return self.reject_transfer(transfer_id, tenant_id, approver_id, notes=comments)
        if outcome in (ApprovalStatus.CANCELLED, ApprovalStatus.EXPIRED):
            if transfer.status != TransferStatus.PENDING:
                logger.info(
                    f"Approval {outcome.value} for transfer {transfer.transfer_number} ignored: "
                    f"transfer is {transfer.status.value}"
                )
                return transfer
            return self.cancel_transfer(transfer_id, tenant_id, approver_id, notes=comments, cancel_approval=False)
        raise InvalidStateError(f"Unsupported approval outcome: {outcome.value}")

    def submit_decision(
        self,
        transfer_id: UUID,
        tenant_id: UUID,
        user_id: UUID,
        decision: ApprovalDecisionType,
        comments: Optional[str] = None
    ) -> InventoryTransfer:
        """
        Approve or reject a transfer on behalf of a user.

        When the transfer has a pending approval request the decision is
        recorded there, and the transfer moves only once the request reaches
        a terminal status. Without one the transition is applied directly.
        """
        transfer = self.get_transfer_record(tenant_id, transfer_id)
        linked = self._pending_request(transfer)
        if linked and transfer.status == TransferStatus.PENDING:
            self.approvals.process_approval(
                linked.id,
                tenant_id,
                ApprovalDecisionIn(approver_id=user_id, decision=decision, comments=comments)
            )
            return self.get_transfer_record(tenant_id, transfer_id)

        if decision == ApprovalDecisionType.APPROVED:
            return self.approve_transfer(transfer_id, tenant_id, user_id)
        return self.reject_transfer(transfer_id, tenant_id, user_id, notes=comments)

    # ===== QUERIES =====

    def get_transfer(self, tenant_id: UUID, transfer_id: UUID) -> TransferOut:
        return self.transfer_to_output(self.get_transfer_record(tenant_id, transfer_id))

    def list_transfers(
        self,
        tenant_id: UUID,
        statuses: Optional[List[TransferStatus]] = None,
        source_store_id: Optional[UUID] = None,
        destination_store_id: Optional[UUID] = None,
        product_id: Optional[UUID] = None,
        requested_by: Optional[UUID] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = settings.DEFAULT_PAGE_SIZE,
        offset: int = 0
    ) -> TransferList:
        query = self.db.query(InventoryTransfer).options(
            selectinload(InventoryTransfer.source_store),
            selectinload(InventoryTransfer.destination_store),
            selectinload(InventoryTransfer.product),
            selectinload(InventoryTransfer.requester)
        ).filter(InventoryTransfer.tenant_id == tenant_id)

        if statuses:
            query = query.filter(InventoryTransfer.status.in_(statuses))
        if source_store_id:
            query = query.filter(InventoryTransfer.source_store_id == source_store_id)
        if destination_store_id:
            query = query.filter(InventoryTransfer.destination_store_id == destination_store_id)
        if product_id:
            query = query.filter(InventoryTransfer.product_id == product_id)
        if requested_by:
            query = query.filter(InventoryTransfer.requested_by == requested_by)
        if date_from:
            query = query.filter(InventoryTransfer.created_at >= date_from)
        if date_to:
            query = query.filter(InventoryTransfer.created_at <= date_to)

        total = query.count()
        transfers = query.order_by(
            InventoryTransfer.created_at.desc()
        ).offset(offset).limit(limit).all()

        return TransferList(
            transfers=[self.transfer_to_output(transfer) for transfer in transfers],
            total=total,
            limit=limit,
            offset=offset
        )

    def get_transfer_stats(self, tenant_id: UUID) -> TransferStats:
        rows = self.db.query(
            InventoryTransfer.status,
            func.count(InventoryTransfer.id),
            func.sum(InventoryTransfer.quantity)
        ).filter(
            InventoryTransfer.tenant_id == tenant_id
        ).group_by(InventoryTransfer.status).all()

        stats = TransferStats()
        for status, count, total_quantity in rows:
            stats.total_transfers += count
            if status == TransferStatus.PENDING:
                stats.pending_transfers = count
            elif status == TransferStatus.APPROVED:
                stats.approved_transfers = count
            elif status == TransferStatus.IN_TRANSIT:
                stats.in_transit_transfers = count
            elif status == TransferStatus.COMPLETED:
                stats.completed_transfers = count
                stats.total_quantity_transferred = to_quantity(total_quantity or 0)
            elif status == TransferStatus.CANCELLED:
                stats.cancelled_transfers = count
            elif status == TransferStatus.REJECTED:
                stats.rejected_transfers = count
        return stats

    def transfer_to_output(self, transfer: InventoryTransfer) -> TransferOut:
        output = TransferOut.model_validate(transfer)
        requester = transfer.requester
        return output.model_copy(update={
            "source_store_name": transfer.source_store.name if transfer.source_store else None,
            "destination_store_name": transfer.destination_store.name if transfer.destination_store else None,
            "product_name": transfer.product.name if transfer.product else None,
            "product_sku": transfer.product.sku if transfer.product else None,
            "requester_name": (requester.full_name or requester.email) if requester else None,
        })
