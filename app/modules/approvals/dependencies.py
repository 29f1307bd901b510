"""
Dependencies for the approvals module
"""
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.dependencies.dbDependecies import get_db
from app.modules.approvals.handlers import ApprovalHandlerRegistry
from app.modules.approvals.service import ApprovalService


def get_approval_handlers(request: Request) -> ApprovalHandlerRegistry:
    """Registry built at application start-up (app.state.approval_handlers)."""
    return request.app.state.approval_handlers


def get_approval_service(
    db: Session = Depends(get_db),
    handlers: ApprovalHandlerRegistry = Depends(get_approval_handlers)
) -> ApprovalService:
    return ApprovalService(db, handlers=handlers)
