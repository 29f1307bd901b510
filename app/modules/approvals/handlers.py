"""
Approval outcome dispatch.

Domain modules register a handler per ApprovalObjectType at start-up; the
approval service calls `dispatch` when a request reaches a terminal status.
The approvals module never imports the domain modules it drives.
"""
import logging
from typing import Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.exceptions import ApprovalHandlerNotImplementedError
from app.modules.approvals.models import ApprovalObjectType, ApprovalRequest, ApprovalStatus

logger = logging.getLogger(__name__)

# handler(db, request, outcome, actor_id, comments)
ApprovalOutcomeHandler = Callable[[Session, ApprovalRequest, ApprovalStatus, UUID, Optional[str]], None]


class ApprovalHandlerRegistry:

    def __init__(self):
        self._handlers: Dict[ApprovalObjectType, ApprovalOutcomeHandler] = {}

    def register(self, object_type: ApprovalObjectType, handler: ApprovalOutcomeHandler) -> None:
        if object_type in self._handlers:
            logger.warning(f"Replacing approval outcome handler for {object_type.value}")
        self._handlers[object_type] = handler

    def is_registered(self, object_type: ApprovalObjectType) -> bool:
        return object_type in self._handlers

    def dispatch(
        self,
        db: Session,
        request: ApprovalRequest,
        outcome: ApprovalStatus,
        actor_id: UUID,
        comments: Optional[str] = None
    ) -> None:
        handler = self._handlers.get(request.object_type)
        if handler is None:
            raise ApprovalHandlerNotImplementedError(request.object_type.value)
        handler(db, request, outcome, actor_id, comments)
