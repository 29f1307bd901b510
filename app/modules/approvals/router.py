"""
Router for the approvals module

- Approval rules: create, list, update, deactivate
- Approval requests: create, list, pending for the caller, detail,
  decision, cancel
- Statistics
"""

from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
from uuid import UUID
from datetime import datetime

from app.common.responses import APIResponse
from app.core.config import settings
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.approvals.dependencies import get_approval_service
from app.modules.approvals.models import ApprovalObjectType, ApprovalStatus
from app.modules.approvals.service import ApprovalService
from app.modules.approvals.schemas import (
    ApprovalRuleCreate, ApprovalRuleUpdate, ApprovalRuleOut,
    ApprovalRequestCreate, ApprovalRequestOut, ApprovalRequestList,
    ApprovalDecisionCreate, ApprovalDecisionIn, ApprovalCancel, ApprovalStatistics
)

router = APIRouter(
    prefix="/approvals",
    tags=["Approvals"],
    responses={404: {"description": "Not found"}}
)

RULE_ADMIN_ROLES = ["owner", "admin"]
MEMBER_ROLES = ["owner", "admin", "manager", "finance", "cashier", "viewer"]
REPORT_ROLES = ["owner", "admin", "manager", "finance"]


# ===== RULES =====

@router.post("/rules", response_model=APIResponse[ApprovalRuleOut], status_code=status.HTTP_201_CREATED)
def create_rule(
    rule_data: ApprovalRuleCreate,
    service: ApprovalService = Depends(get_approval_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(RULE_ADMIN_ROLES))
):
    """Create an approval rule for an object type."""
    rule = service.create_rule(auth_context.tenant_id, rule_data, auth_context.user_id)
    return APIResponse(data=service.rule_to_output(rule), message="Approval rule created")


@router.get("/rules", response_model=APIResponse[List[ApprovalRuleOut]])
def list_rules(
    object_type: Optional[ApprovalObjectType] = Query(None),
    is_active: Optional[bool] = Query(None),
    service: ApprovalService = Depends(get_approval_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(REPORT_ROLES))
):
    rules = service.list_rules(auth_context.tenant_id, object_type, is_active)
    return APIResponse(data=[service.rule_to_output(rule) for rule in rules])


@router.put("/rules/{rule_id}", response_model=APIResponse[ApprovalRuleOut])
def update_rule(
    rule_id: UUID,
    rule_data: ApprovalRuleUpdate,
    service: ApprovalService = Depends(get_approval_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(RULE_ADMIN_ROLES))
):
    """Update a rule. Requests already created keep the levels they started with."""
    rule = service.update_rule(auth_context.tenant_id, rule_id, rule_data)
    return APIResponse(data=service.rule_to_output(rule), message="Approval rule updated")


@router.delete("/rules/{rule_id}", response_model=APIResponse[ApprovalRuleOut])
def deactivate_rule(
    rule_id: UUID,
    service: ApprovalService = Depends(get_approval_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(RULE_ADMIN_ROLES))
):
    rule = service.deactivate_rule(auth_context.tenant_id, rule_id)
    return APIResponse(data=service.rule_to_output(rule), message="Approval rule deactivated")


# ===== REQUESTS =====

@router.post("/requests", response_model=APIResponse[ApprovalRequestOut], status_code=status.HTTP_201_CREATED)
def create_approval_request(
    request_data: ApprovalRequestCreate,
    service: ApprovalService = Depends(get_approval_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(MEMBER_ROLES))
):
    """
    Create an approval request; it is auto-approved when no rule requires approval.

    Inventory transfers open their own requests and are refused here.
    """
    if request_data.store_id is None and auth_context.store_id is not None:
        request_data = request_data.model_copy(update={"store_id": auth_context.store_id})
    request = service.submit_approval_request(auth_context.tenant_id, auth_context.user_id, request_data)
    return APIResponse(data=service.request_to_output(request), message="Approval request created")


@router.get("/requests", response_model=APIResponse[ApprovalRequestList])
def list_approval_requests(
    status_filter: Optional[ApprovalStatus] = Query(None, alias="status"),
    object_type: Optional[ApprovalObjectType] = Query(None),
    requested_by: Optional[UUID] = Query(None),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    service: ApprovalService = Depends(get_approval_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(MEMBER_ROLES))
):
    return APIResponse(data=service.list_approval_requests(
        auth_context.tenant_id,
        status=status_filter,
        object_type=object_type,
        requested_by=requested_by,
        limit=limit,
        offset=offset
    ))


@router.get("/requests/pending", response_model=APIResponse[List[ApprovalRequestOut]])
def get_pending_approvals(
    service: ApprovalService = Depends(get_approval_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(MEMBER_ROLES))
):
    """Pending requests the caller can act on at their current level."""
    requests = service.get_pending_approvals_for_user(auth_context.user_id, auth_context.tenant_id)
    return APIResponse(data=[service.request_to_output(request) for request in requests])


@router.get("/requests/{request_id}", response_model=APIResponse[ApprovalRequestOut])
def get_approval_request(
    request_id: UUID,
    service: ApprovalService = Depends(get_approval_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(MEMBER_ROLES))
):
    request = service.get_approval_request(auth_context.tenant_id, request_id)
    return APIResponse(data=service.request_to_output(request))


@router.post("/requests/{request_id}/decision", response_model=APIResponse[ApprovalRequestOut])
def process_approval(
    request_id: UUID,
    decision: ApprovalDecisionCreate,
    service: ApprovalService = Depends(get_approval_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(MEMBER_ROLES))
):
    """Approve or reject the current level of a request."""
    request = service.process_approval(
        request_id,
        auth_context.tenant_id,
        ApprovalDecisionIn(approver_id=auth_context.user_id, **decision.model_dump())
    )
    return APIResponse(data=service.request_to_output(request), message=f"Decision recorded: {decision.decision.value}")


@router.post("/requests/{request_id}/cancel", response_model=APIResponse[ApprovalRequestOut])
def cancel_approval_request(
    request_id: UUID,
    payload: Optional[ApprovalCancel] = None,
    service: ApprovalService = Depends(get_approval_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(MEMBER_ROLES))
):
    request = service.cancel_approval_request(request_id, auth_context.tenant_id, auth_context.user_id, payload.reason if payload else None)
    return APIResponse(data=service.request_to_output(request), message="Approval request cancelled")


# ===== STATISTICS =====

@router.get("/statistics", response_model=APIResponse[ApprovalStatistics])
def get_approval_statistics(
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    service: ApprovalService = Depends(get_approval_service),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(REPORT_ROLES))
):
    return APIResponse(data=service.get_approval_statistics(auth_context.tenant_id, date_from, date_to))
