"""
Bulk inventory transfers

Groups several products moving between the same two stores under one
document so they can be prepared, reviewed and approved together.

Lifecycle:
    draft -> pending -> approved
    draft | pending | approved -> cancelled

Stock is only checked (not held) while the bulk transfer is a draft or
pending. Approval opens one InventoryTransfer per item through
InventoryTransferService.create_transfer, so each item is reserved or sent
for approval exactly like a transfer requested on its own. If any item can
no longer be covered the whole approval is rolled back.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.common.mixins import utcnow
from app.core.config import settings
from app.core.exceptions import (
    DuplicateRecordError, InsufficientInventoryError, InvalidStateError, NotFoundError, ValidationError
)
from app.database.database import transaction
from app.modules.approvals.models import ApprovalPriority
from app.modules.inventory.service import to_quantity
from app.modules.transfers.models import (
    BulkInventoryTransfer, BulkInventoryTransferItem, BulkTransferStatus, BulkTransferType, TransferStatus
)
from app.modules.transfers.schemas import (
    BulkTransferCreate, BulkTransferItemOut, BulkTransferList, BulkTransferOut, TransferCreate
)
from app.modules.transfers.service import InventoryTransferService, daily_number_prefix

logger = logging.getLogger(__name__)

CANCELLABLE_TRANSFER_STATUSES = (TransferStatus.PENDING, TransferStatus.APPROVED)


def _append_note(existing: Optional[str], line: str) -> str:
    return f"{existing}\n{line}" if existing else line


class BulkInventoryTransferService:
    """Service for bulk inventory transfers."""

    def __init__(self, db: Session, transfers: Optional[InventoryTransferService] = None):
        self.db = db
        self.transfers = transfers or InventoryTransferService(db)
        self.inventory = self.transfers.inventory

    def _insert_with_number(self, bulk: BulkInventoryTransfer) -> BulkInventoryTransfer:
        prefix = daily_number_prefix(settings.BULK_TRANSFER_NUMBER_PREFIX)
        todays_count = self.db.query(func.count(BulkInventoryTransfer.id)).filter(
            BulkInventoryTransfer.tenant_id == bulk.tenant_id,
            BulkInventoryTransfer.bulk_transfer_number.like(f"{prefix}%")
        ).scalar() or 0

        sequence = todays_count + 1
        for _ in range(settings.TRANSFER_NUMBER_MAX_RETRIES):
            bulk.bulk_transfer_number = f"{prefix}{sequence:04d}"
            sequence += 1
            try:
                with self.db.begin_nested():
                    self.db.add(bulk)
                return bulk
            except IntegrityError:
                logger.warning(f"Bulk transfer number collision on {bulk.bulk_transfer_number}, retrying")

        raise DuplicateRecordError(
            "Could not allocate a unique bulk transfer number",
            {"prefix": prefix, "attempts": settings.TRANSFER_NUMBER_MAX_RETRIES}
        )

    def get_bulk_record(self, tenant_id: UUID, bulk_id: UUID) -> BulkInventoryTransfer:
        bulk = self.db.query(BulkInventoryTransfer).filter(
            BulkInventoryTransfer.tenant_id == tenant_id,
            BulkInventoryTransfer.id == bulk_id
        ).first()
        if not bulk:
            raise NotFoundError("Bulk inventory transfer", bulk_id)
        return bulk

    def _lock_bulk(
        self,
        tenant_id: UUID,
        bulk_id: UUID,
        allowed: Sequence[BulkTransferStatus],
        action: str
    ) -> BulkInventoryTransfer:
        bulk = self.db.query(BulkInventoryTransfer).populate_existing().filter(
            BulkInventoryTransfer.tenant_id == tenant_id,
            BulkInventoryTransfer.id == bulk_id,
            BulkInventoryTransfer.status.in_(allowed)
        ).with_for_update().first()
        if bulk is None:
            current = self.get_bulk_record(tenant_id, bulk_id)
            raise InvalidStateError(
                f"Cannot {action} a bulk transfer that is {current.status.value}",
                current_status=current.status.value
            )
        return bulk

    # ===== LIFECYCLE =====

    def create_bulk_transfer(
        self,
        tenant_id: UUID,
        requested_by: UUID,
        bulk_data: BulkTransferCreate
    ) -> BulkInventoryTransfer:
        """
        Create a draft. Every item must be covered by the source store's
        available stock right now; nothing is reserved yet.
        """
        if bulk_data.source_store_id == bulk_data.destination_store_id:
            raise ValidationError("Source and destination stores must be different")

        with transaction(self.db):
            self.inventory.get_store(tenant_id, bulk_data.source_store_id)
            self.inventory.get_store(tenant_id, bulk_data.destination_store_id)

            items = []
            for line_number, item in enumerate(bulk_data.items, start=1):
                self.inventory.get_product(tenant_id, item.product_id)
                quantity = to_quantity(item.quantity)
                source = self.inventory.find_record(tenant_id, bulk_data.source_store_id, item.product_id)
                available = source.quantity_available if source else Decimal("0")
                if source is None or available < quantity:
                    error = InsufficientInventoryError(available, quantity)
                    error.details["product_id"] = str(item.product_id)
                    raise error

                unit_cost = item.unit_cost if item.unit_cost is not None else (source.unit_cost or Decimal("0"))
                items.append(BulkInventoryTransferItem(
                    line_number=line_number,
                    product_id=item.product_id,
                    quantity=quantity,
                    unit_cost=unit_cost,
                    line_total=(unit_cost * quantity).quantize(Decimal("0.01")),
                    notes=item.notes
                ))

            bulk = BulkInventoryTransfer(
                tenant_id=tenant_id,
                source_store_id=bulk_data.source_store_id,
                destination_store_id=bulk_data.destination_store_id,
                title=bulk_data.title,
                description=bulk_data.description,
                status=BulkTransferStatus.DRAFT,
                priority=bulk_data.priority,
                transfer_type=bulk_data.transfer_type,
                scheduled_ship_date=bulk_data.scheduled_ship_date,
                scheduled_receive_date=bulk_data.scheduled_receive_date,
                total_items=len(items),
                total_quantity=sum((item.quantity for item in items), Decimal("0")),
                total_value=sum((item.line_total for item in items), Decimal("0")),
                notes=bulk_data.notes,
                reference=bulk_data.reference,
                requested_by=requested_by
            )
            self._insert_with_number(bulk)
            bulk.items = items
            self.db.flush()

        logger.info(f"Bulk transfer created: {bulk.bulk_transfer_number} with {bulk.total_items} items")
        return bulk

    def submit_bulk_transfer(self, bulk_id: UUID, tenant_id: UUID, user_id: UUID) -> BulkInventoryTransfer:
        """draft -> pending."""
        with transaction(self.db):
            bulk = self._lock_bulk(tenant_id, bulk_id, [BulkTransferStatus.DRAFT], "submit")
            bulk.status = BulkTransferStatus.PENDING
            bulk.submitted_at = utcnow()
            self.db.flush()

        logger.info(f"Bulk transfer submitted by {user_id}: {bulk.bulk_transfer_number}")
        return bulk

    def approve_bulk_transfer(
        self,
        bulk_id: UUID,
        tenant_id: UUID,
        user_id: UUID,
        notes: Optional[str] = None
    ) -> BulkInventoryTransfer:
        """
        pending -> approved. Opens one transfer per item on behalf of the
        original requester; each one is auto-approved and reserved, or left
        pending behind its own approval request, by the usual rules.
        """
        with transaction(self.db):
            bulk = self._lock_bulk(tenant_id, bulk_id, [BulkTransferStatus.PENDING], "approve")

            for item in bulk.items:
                item_notes = f"Part of bulk transfer {bulk.bulk_transfer_number}"
                if item.notes:
                    item_notes = f"{item_notes}: {item.notes}"
                transfer = self.transfers.create_transfer(tenant_id, bulk.requested_by, TransferCreate(
                    source_store_id=bulk.source_store_id,
                    destination_store_id=bulk.destination_store_id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    notes=item_notes,
                    reference=bulk.bulk_transfer_number,
                    priority=bulk.priority
                ))
                item.transfer_id = transfer.id

            bulk.status = BulkTransferStatus.APPROVED
            bulk.approved_by = user_id
            bulk.approved_at = utcnow()
            if notes:
                bulk.notes = _append_note(bulk.notes, f"Approval notes: {notes}")
            self.db.flush()

        logger.info(f"Bulk transfer approved: {bulk.bulk_transfer_number}, {len(bulk.items)} transfers opened")
        return bulk

    def cancel_bulk_transfer(
        self,
        bulk_id: UUID,
        tenant_id: UUID,
        user_id: UUID,
        reason: Optional[str] = None
    ) -> BulkInventoryTransfer:
        """
        Cancel a draft, pending or approved bulk transfer. For an approved one
        every item transfer still pending or approved is cancelled too, which
        releases its reservation or cancels its approval request. Items
        already shipped or completed are left alone.
        """
        with transaction(self.db):
            bulk = self._lock_bulk(
                tenant_id, bulk_id,
                [BulkTransferStatus.DRAFT, BulkTransferStatus.PENDING, BulkTransferStatus.APPROVED],
                "cancel"
            )

            if bulk.status == BulkTransferStatus.APPROVED:
                for item in bulk.items:
                    if item.transfer_id is None:
                        continue
                    transfer = self.transfers.get_transfer_record(tenant_id, item.transfer_id)
                    if transfer.status in CANCELLABLE_TRANSFER_STATUSES:
                        self.transfers.cancel_transfer(transfer.id, tenant_id, user_id, notes=reason)
                    else:
                        logger.info(
                            f"Transfer {transfer.transfer_number} is {transfer.status.value}; "
                            f"left as is while cancelling {bulk.bulk_transfer_number}"
                        )

            bulk.status = BulkTransferStatus.CANCELLED
            bulk.cancelled_by = user_id
            bulk.cancelled_at = utcnow()
            if reason:
                bulk.notes = _append_note(bulk.notes, f"Cancellation reason: {reason}")
            self.db.flush()

        logger.info(f"Bulk transfer cancelled: {bulk.bulk_transfer_number}")
        return bulk

    # ===== QUERIES =====

    def get_bulk_transfer(self, tenant_id: UUID, bulk_id: UUID) -> BulkTransferOut:
        return self.bulk_to_output(self.get_bulk_record(tenant_id, bulk_id))

    def list_bulk_transfers(
        self,
        tenant_id: UUID,
        statuses: Optional[List[BulkTransferStatus]] = None,
        source_store_id: Optional[UUID] = None,
        destination_store_id: Optional[UUID] = None,
        transfer_types: Optional[List[BulkTransferType]] = None,
        priorities: Optional[List[ApprovalPriority]] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = settings.DEFAULT_PAGE_SIZE,
        offset: int = 0
    ) -> BulkTransferList:
        query = self.db.query(BulkInventoryTransfer).options(
            selectinload(BulkInventoryTransfer.items).selectinload(BulkInventoryTransferItem.product),
            selectinload(BulkInventoryTransfer.source_store),
            selectinload(BulkInventoryTransfer.destination_store),
            selectinload(BulkInventoryTransfer.requester)
        ).filter(BulkInventoryTransfer.tenant_id == tenant_id)

        if statuses:
            query = query.filter(BulkInventoryTransfer.status.in_(statuses))
        if source_store_id:
            query = query.filter(BulkInventoryTransfer.source_store_id == source_store_id)
        if destination_store_id:
            query = query.filter(BulkInventoryTransfer.destination_store_id == destination_store_id)
        if transfer_types:
            query = query.filter(BulkInventoryTransfer.transfer_type.in_(transfer_types))
        if priorities:
            query = query.filter(BulkInventoryTransfer.priority.in_(priorities))
        if date_from:
            query = query.filter(BulkInventoryTransfer.created_at >= date_from)
        if date_to:
            query = query.filter(BulkInventoryTransfer.created_at <= date_to)

        total = query.count()
        bulks = query.order_by(BulkInventoryTransfer.created_at.desc()).offset(offset).limit(limit).all()

        return BulkTransferList(
            bulk_transfers=[self.bulk_to_output(bulk) for bulk in bulks],
            total=total,
            limit=limit,
            offset=offset
        )

    def bulk_to_output(self, bulk: BulkInventoryTransfer) -> BulkTransferOut:
        items = []
        for item in bulk.items:
            output = BulkTransferItemOut.model_validate(item)
            items.append(output.model_copy(update={
                "product_name": item.product.name if item.product else None,
                "product_sku": item.product.sku if item.product else None,
                "transfer_number": item.transfer.transfer_number if item.transfer else None,
                "transfer_status": item.transfer.status if item.transfer else None,
            }))

        requester = bulk.requester
        output = BulkTransferOut.model_validate(bulk)
        return output.model_copy(update={
            "items": items,
            "source_store_name": bulk.source_store.name if bulk.source_store else None,
            "destination_store_name": bulk.destination_store.name if bulk.destination_store else None,
            "requester_name": (requester.full_name or requester.email) if requester else None,
        })
