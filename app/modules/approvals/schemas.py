from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import datetime
from decimal import Decimal

from app.modules.approvals.models import (
    ApprovalObjectType, ApprovalStatus, ApprovalPriority, ApprovalDecisionType
)


# ===== RULES =====

class ApprovalLevel(BaseModel):
    level: int = Field(..., ge=1)
    approver_roles: List[str] = Field(..., min_length=1)
    min_approvals: int = Field(1, ge=1)
    max_amount: Optional[Decimal] = Field(None, ge=0)  # kept in the request snapshot, not enforced

    @field_validator('approver_roles')
    @classmethod
    def validate_roles(cls, v):
        roles = [role.strip() for role in v if role and role.strip()]
        if not roles:
            raise ValueError('At least one approver role is required')
        return roles


class ApprovalRuleConditions(BaseModel):
    """Matching bounds plus the level structure of a rule."""
    min_amount: Optional[Decimal] = Field(None, ge=0)
    max_amount: Optional[Decimal] = Field(None, ge=0)
    store_ids: List[UUID] = Field(default_factory=list)
    requires_approval: bool = True
    approval_levels: List[ApprovalLevel] = Field(default_factory=list)
    expiry_hours: Optional[int] = Field(None, gt=0)

    @model_validator(mode='after')
    def validate_levels(self):
        if self.min_amount is not None and self.max_amount is not None and self.min_amount > self.max_amount:
            raise ValueError('min_amount cannot be greater than max_amount')
        if self.requires_approval and not self.approval_levels:
            raise ValueError('A rule that requires approval needs at least one approval level')
        self.approval_levels = sorted(self.approval_levels, key=lambda level: level.level)
        numbers = [level.level for level in self.approval_levels]
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError('Approval levels must be numbered 1..n without gaps or repeats')
        return self


class ApprovalRuleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    object_type: ApprovalObjectType
    conditions: ApprovalRuleConditions
    is_active: bool = True


class ApprovalRuleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    conditions: Optional[ApprovalRuleConditions] = None
    is_active: Optional[bool] = None


class ApprovalRuleOut(BaseModel):
    id: UUID
    tenant_id: UUID
    name: str
    description: Optional[str] = None
    object_type: ApprovalObjectType
    conditions: ApprovalRuleConditions
    is_active: bool
    created_by: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


# ===== REQUESTS =====

class ApprovalData(BaseModel):
    """Normalized payload the rule matcher evaluates."""
    amount: Optional[Decimal] = None
    store_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ApprovalRequestCreate(BaseModel):
    object_type: ApprovalObjectType
    object_id: UUID
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    priority: ApprovalPriority = ApprovalPriority.MEDIUM
    store_id: Optional[UUID] = None
    approval_data: ApprovalData = Field(default_factory=ApprovalData)


class ApprovalDecisionRecord(BaseModel):
    """One entry of ApprovalRequest.approvals."""
    level: int
    approver_id: UUID
    approver_role: str
    decision: ApprovalDecisionType
    comments: Optional[str] = None
    approved_at: datetime


class ApprovalDecisionCreate(BaseModel):
    decision: ApprovalDecisionType
    comments: Optional[str] = Field(None, max_length=1000)


class ApprovalDecisionIn(ApprovalDecisionCreate):
    approver_id: UUID


class ApprovalCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class ApprovalRequestOut(BaseModel):
    id: UUID
    tenant_id: UUID
    store_id: Optional[UUID] = None
    requested_by: UUID
    object_type: ApprovalObjectType
    object_id: UUID
    title: str
    description: Optional[str] = None
    priority: ApprovalPriority
    status: ApprovalStatus
    approval_rule_id: Optional[UUID] = None
    approval_data: Optional[Dict[str, Any]] = None
    approval_levels: List[ApprovalLevel] = Field(default_factory=list)
    current_level: int
    total_levels: int
    required_approvals: int
    approved_count: int
    rejected_count: int
    approvals: List[ApprovalDecisionRecord] = Field(default_factory=list)
    approved_by: Optional[UUID] = None
    cancelled_by: Optional[UUID] = None
    cancellation_reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    # Joined data
    requester_name: Optional[str] = None
    rule_name: Optional[str] = None

    model_config = {"from_attributes": True}


class ApprovalRequestList(BaseModel):
    requests: List[ApprovalRequestOut]
    total: int
    limit: int
    offset: int


class ApprovalStatistics(BaseModel):
    total_requests: int = 0
    pending_requests: int = 0
    approved_requests: int = 0
    rejected_requests: int = 0
    cancelled_requests: int = 0
    expired_requests: int = 0
    average_approval_hours: Optional[float] = None
