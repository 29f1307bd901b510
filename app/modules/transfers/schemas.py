from pydantic import BaseModel, Field, model_validator
from typing import Optional, List
from uuid import UUID
from datetime import datetime
from decimal import Decimal

from app.modules.approvals.models import ApprovalPriority
from app.modules.transfers.models import BulkTransferStatus, BulkTransferType, TransferStatus


class TransferCreate(BaseModel):
    source_store_id: UUID
    destination_store_id: UUID
    product_id: UUID
    quantity: Decimal = Field(..., gt=0, decimal_places=3)
    notes: Optional[str] = Field(None, max_length=1000)
    reference: Optional[str] = Field(None, max_length=100)
    priority: ApprovalPriority = ApprovalPriority.MEDIUM

    @model_validator(mode='after')
    def validate_stores(self):
        if self.source_store_id == self.destination_store_id:
            raise ValueError('Source and destination stores must be different')
        return self


class TransferDecision(BaseModel):
    comments: Optional[str] = Field(None, max_length=1000)


class TransferAction(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class TransferOut(BaseModel):
    id: UUID
    tenant_id: UUID
    transfer_number: str
    source_store_id: UUID
    destination_store_id: UUID
    product_id: UUID
    quantity: Decimal
    unit_cost: Decimal
    status: TransferStatus
    notes: Optional[str] = None
    reference: Optional[str] = None
    approval_request_id: Optional[UUID] = None
    requested_by: UUID
    approved_by: Optional[UUID] = None
    shipped_by: Optional[UUID] = None
    received_by: Optional[UUID] = None
    cancelled_by: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    # Joined data
    source_store_name: Optional[str] = None
    destination_store_name: Optional[str] = None
    product_name: Optional[str] = None
    product_sku: Optional[str] = None
    requester_name: Optional[str] = None

    model_config = {"from_attributes": True}


class TransferList(BaseModel):
    transfers: List[TransferOut]
    total: int
    limit: int
    offset: int


class TransferStats(BaseModel):
    total_transfers: int = 0
    pending_transfers: int = 0
    approved_transfers: int = 0
    in_transit_transfers: int = 0
    completed_transfers: int = 0
    cancelled_transfers: int = 0
    rejected_transfers: int = 0
    total_quantity_transferred: Decimal = Decimal("0")


# ===== BULK TRANSFERS =====

class BulkTransferItemCreate(BaseModel):
    product_id: UUID
    quantity: Decimal = Field(..., gt=0, decimal_places=3)
    unit_cost: Optional[Decimal] = Field(None, ge=0)  # defaults to the source store's unit cost
    notes: Optional[str] = Field(None, max_length=500)


class BulkTransferCreate(BaseModel):
    source_store_id: UUID
    destination_store_id: UUID
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    priority: ApprovalPriority = ApprovalPriority.MEDIUM
    transfer_type: BulkTransferType = BulkTransferType.REPLENISHMENT
    scheduled_ship_date: Optional[datetime] = None
    scheduled_receive_date: Optional[datetime] = None
    items: List[BulkTransferItemCreate] = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=1000)
    reference: Optional[str] = Field(None, max_length=100)

    @model_validator(mode='after')
    def validate_transfer(self):
        if self.source_store_id == self.destination_store_id:
            raise ValueError('Source and destination stores must be different')
        product_ids = [item.product_id for item in self.items]
        if len(set(product_ids)) != len(product_ids):
            raise ValueError('Each product may appear only once in a bulk transfer')
        if (self.scheduled_ship_date and self.scheduled_receive_date
                and self.scheduled_receive_date < self.scheduled_ship_date):
            raise ValueError('Scheduled receive date cannot be before the ship date')
        return self


class BulkTransferAction(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class BulkTransferItemOut(BaseModel):
    id: UUID
    line_number: int
    product_id: UUID
    quantity: Decimal
    unit_cost: Decimal
    line_total: Decimal
    notes: Optional[str] = None
    transfer_id: Optional[UUID] = None

    # Joined data
    product_name: Optional[str] = None
    product_sku: Optional[str] = None
    transfer_number: Optional[str] = None
    transfer_status: Optional[TransferStatus] = None

    model_config = {"from_attributes": True}


class BulkTransferOut(BaseModel):
    id: UUID
    tenant_id: UUID
    bulk_transfer_number: str
    source_store_id: UUID
    destination_store_id: UUID
    title: str
    description: Optional[str] = None
    status: BulkTransferStatus
    priority: ApprovalPriority
    transfer_type: BulkTransferType
    scheduled_ship_date: Optional[datetime] = None
    scheduled_receive_date: Optional[datetime] = None
    total_items: int
    total_quantity: Decimal
    total_value: Decimal
    notes: Optional[str] = None
    reference: Optional[str] = None
    requested_by: UUID
    approved_by: Optional[UUID] = None
    cancelled_by: Optional[UUID] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: List[BulkTransferItemOut] = []

    # Joined data
    source_store_name: Optional[str] = None
    destination_store_name: Optional[str] = None
    requester_name: Optional[str] = None

    model_config = {"from_attributes": True}


class BulkTransferList(BaseModel):
    bulk_transfers: List[BulkTransferOut]
    total: int
    limit: int
    offset: int
