"""
Approval rules and the multi-level approval request state machine.

Request lifecycle:
    pending -> (level advance)* -> approved | rejected | cancelled | expired

- A request whose operation matches no rule (or a rule that does not require
  approval) is created already approved, with one "system" decision record.
- A single rejection at any level is terminal.
- approved_count / rejected_count reset every time current_level advances.
- On a terminal outcome the registered domain handler is invoked inside a
  SAVEPOINT; its failure is logged and never undoes the recorded decision.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from app.common.mixins import utcnow
from app.core.config import settings
from app.core.exceptions import (
    DuplicateRecordError, InvalidStateError, NotFoundError, UnauthorizedError, ValidationError
)
from app.database.database import transaction
from app.modules.approvals.handlers import ApprovalHandlerRegistry
from app.modules.approvals.matcher import ApprovalRuleMatcher, parse_conditions
from app.modules.approvals.models import (
    ApprovalRule, ApprovalRequest, ApprovalObjectType, ApprovalStatus, ApprovalDecisionType
)
from app.modules.approvals.schemas import (
    ApprovalData, ApprovalDecisionIn, ApprovalDecisionRecord, ApprovalLevel,
    ApprovalRequestCreate, ApprovalRequestList, ApprovalRequestOut,
    ApprovalRuleCreate, ApprovalRuleOut, ApprovalRuleUpdate, ApprovalStatistics
)
from app.modules.audit.models import AuditAction
from app.modules.audit.service import AuditService
from app.modules.auth.service import AuthService

logger = logging.getLogger(__name__)

AUDIT_TABLE = "approval_request"
SYSTEM_ROLE = "system"
AUTO_APPROVED_COMMENT = "Auto-approved - no rule required approval"


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None) if value.tzinfo else value


class ApprovalService:
    """Service for approval rules and approval requests."""

    def __init__(self, db: Session, handlers: Optional[ApprovalHandlerRegistry] = None):
        self.db = db
        self.handlers = handlers
        self.matcher = ApprovalRuleMatcher(db)
        self.audit = AuditService(db)
        self.auth = AuthService(db)

    # ===== RULES =====

    def create_rule(self, tenant_id: UUID, rule_data: ApprovalRuleCreate, created_by: UUID) -> ApprovalRule:
        with transaction(self.db):
            rule = ApprovalRule(
                tenant_id=tenant_id,
                name=rule_data.name,
                description=rule_data.description,
                object_type=rule_data.object_type,
                conditions=rule_data.conditions.model_dump(mode="json"),
                is_active=rule_data.is_active,
                created_by=created_by
            )
            self.db.add(rule)
            self.db.flush()

        logger.info(f"Approval rule created: {rule.name} ({rule.object_type.value})")
        return rule

    def get_rule(self, tenant_id: UUID, rule_id: UUID) -> ApprovalRule:
        rule = self.db.query(ApprovalRule).filter(
            ApprovalRule.tenant_id == tenant_id,
            ApprovalRule.id == rule_id,
            ApprovalRule.deleted_at.is_(None)
        ).first()
        if not rule:
            raise NotFoundError("Approval rule", rule_id)
        return rule

    def list_rules(
        self,
        tenant_id: UUID,
        object_type: Optional[ApprovalObjectType] = None,
        is_active: Optional[bool] = None
    ) -> List[ApprovalRule]:
        query = self.db.query(ApprovalRule).filter(
            ApprovalRule.tenant_id == tenant_id,
            ApprovalRule.deleted_at.is_(None)
        )
        if object_type:
            query = query.filter(ApprovalRule.object_type == object_type)
        if is_active is not None:
            query = query.filter(ApprovalRule.is_active == is_active)
        return query.order_by(ApprovalRule.created_at.desc(), ApprovalRule.id.desc()).all()

    def update_rule(self, tenant_id: UUID, rule_id: UUID, rule_data: ApprovalRuleUpdate) -> ApprovalRule:
        """Only future requests see the change; existing requests keep their copied levels."""
        with transaction(self.db):
            rule = self.get_rule(tenant_id, rule_id)
            update_data = rule_data.model_dump(exclude_unset=True)
            if rule_data.conditions is not None:
                update_data["conditions"] = rule_data.conditions.model_dump(mode="json")
            for field, value in update_data.items():
                if value is None and field != "description":
                    continue
                setattr(rule, field, value)
            self.db.flush()

        logger.info(f"Approval rule updated: {rule.name}")
        return rule

    def deactivate_rule(self, tenant_id: UUID, rule_id: UUID) -> ApprovalRule:
        with transaction(self.db):
            rule = self.get_rule(tenant_id, rule_id)
            rule.is_active = False
            self.db.flush()

        logger.info(f"Approval rule deactivated: {rule.name}")
        return rule

    # ===== MATCHING =====

    def find_applicable_rule(
        self,
        tenant_id: UUID,
        object_type: ApprovalObjectType,
        approval_data: ApprovalData,
        store_id: Optional[UUID] = None
    ) -> Optional[ApprovalRule]:
        return self.matcher.find_applicable_rule(tenant_id, object_type, approval_data, store_id)

    def is_approval_required(
        self,
        tenant_id: UUID,
        object_type: ApprovalObjectType,
        approval_data: ApprovalData,
        store_id: Optional[UUID] = None
    ) -> bool:
        rule = self.find_applicable_rule(tenant_id, object_type, approval_data, store_id)
        return self.rule_requires_approval(rule)

    @staticmethod
    def rule_requires_approval(rule: Optional[ApprovalRule]) -> bool:
        if rule is None:
            return False
        conditions = parse_conditions(rule)
        return bool(conditions and conditions.requires_approval)

    # ===== REQUESTS =====

    def create_approval_request(
        self,
        tenant_id: UUID,
        requested_by_id: UUID,
        request_data: ApprovalRequestCreate,
        rule: Optional[ApprovalRule] = None
    ) -> ApprovalRequest:
        """
        Create an approval request for a domain object.

        `rule` may be passed when the caller already matched one; otherwise
        the matcher is consulted. An object has at most one pending request.
        """
        with transaction(self.db):
            if self.find_request_for_object(
                tenant_id, request_data.object_type, request_data.object_id, ApprovalStatus.PENDING
            ):
                raise DuplicateRecordError(
                    f"A pending approval request already exists for {request_data.object_type.value} "
                    f"{request_data.object_id}",
                    {"object_type": request_data.object_type.value, "object_id": str(request_data.object_id)}
                )

            if rule is None:
                rule = self.matcher.find_applicable_rule(
                    tenant_id, request_data.object_type, request_data.approval_data, request_data.store_id
                )
            conditions = parse_conditions(rule) if rule else None
            now = utcnow()

            request = ApprovalRequest(
                tenant_id=tenant_id,
                store_id=request_data.store_id,
                requested_by=requested_by_id,
                object_type=request_data.object_type,
                object_id=request_data.object_id,
                title=request_data.title,
                description=request_data.description,
                priority=request_data.priority,
                approval_rule_id=rule.id if rule else None,
                approval_data=request_data.approval_data.model_dump(mode="json"),
                rejected_count=0
            )

            if conditions is None or not conditions.requires_approval:
                system_record = ApprovalDecisionRecord(
                    level=1,
                    approver_id=requested_by_id,
                    approver_role=SYSTEM_ROLE,
                    decision=ApprovalDecisionType.APPROVED,
                    comments=AUTO_APPROVED_COMMENT,
                    approved_at=now
                )
                request.status = ApprovalStatus.APPROVED
                request.approval_levels = []
                request.current_level = 1
                request.total_levels = 1
                request.required_approvals = 0
                request.approved_count = 1
                request.approvals = [system_record.model_dump(mode="json")]
                request.approved_by = requested_by_id
                request.approved_at = now
            else:
                levels = conditions.approval_levels
                expiry_hours = conditions.expiry_hours or settings.APPROVAL_DEFAULT_EXPIRY_HOURS
                request.status = ApprovalStatus.PENDING
                request.approval_levels = [level.model_dump(mode="json") for level in levels]
                request.current_level = 1
                request.total_levels = len(levels)
                request.required_approvals = levels[0].min_approvals
                request.approved_count = 0
                request.approvals = []
                request.expires_at = now + timedelta(hours=expiry_hours)

            self.db.add(request)
            self.db.flush()

            self.audit.create_audit_log(
                tenant_id, requested_by_id, AuditAction.INSERT, AUDIT_TABLE, request.id,
                self._audit_data(request), store_id=request.store_id
            )

        logger.info(
            f"Approval request created: {request.id} for {request.object_type.value} "
            f"{request.object_id} ({request.status.value})"
        )
        return request

    def submit_approval_request(
        self,
        tenant_id: UUID,
        requested_by_id: UUID,
        request_data: ApprovalRequestCreate
    ) -> ApprovalRequest:
        """
        Client-facing creation. Object types with a registered outcome handler
        belong to their domain module, which opens their requests itself.
        """
        if self.handlers is not None and self.handlers.is_registered(request_data.object_type):
            raise ValidationError(
                f"Approval requests for {request_data.object_type.value} are opened by their own module",
                {"object_type": request_data.object_type.value}
            )
        return self.create_approval_request(tenant_id, requested_by_id, request_data)

    def get_approval_request(self, tenant_id: UUID, request_id: UUID, for_update: bool = False) -> ApprovalRequest:
        query = self.db.query(ApprovalRequest).filter(
            ApprovalRequest.tenant_id == tenant_id,
            ApprovalRequest.id == request_id
        )
        if for_update:
            query = query.populate_existing().with_for_update()
        request = query.first()
        if not request:
            raise NotFoundError("Approval request", request_id)
        return request

    def find_request_for_object(
        self,
        tenant_id: UUID,
        object_type: ApprovalObjectType,
        object_id: UUID,
        status: Optional[ApprovalStatus] = None
    ) -> Optional[ApprovalRequest]:
        query = self.db.query(ApprovalRequest).filter(
            ApprovalRequest.tenant_id == tenant_id,
            ApprovalRequest.object_type == object_type,
            ApprovalRequest.object_id == object_id
        )
        if status:
            query = query.filter(ApprovalRequest.status == status)
        return query.order_by(ApprovalRequest.created_at.desc()).first()

    def _current_level(self, request: ApprovalRequest) -> ApprovalLevel:
        levels = request.approval_levels or []
        if request.current_level < 1 or request.current_level > len(levels):
            raise InvalidStateError(
                f"Approval request has no level {request.current_level}",
                current_status=request.status.value
            )
        return ApprovalLevel.model_validate(levels[request.current_level - 1])

    def process_approval(
        self,
        request_id: UUID,
        tenant_id: UUID,
        decision: ApprovalDecisionIn
    ) -> ApprovalRequest:
        """
        Record one approver's decision on the current level.

        Raises NotFoundError, InvalidStateError (not pending, or the approver
        already decided on this level) or UnauthorizedError (no eligible role).
        """
        with transaction(self.db):
            request = self.get_approval_request(tenant_id, request_id, for_update=True)
            if request.status != ApprovalStatus.PENDING:
                raise InvalidStateError(
                    f"Approval request is {request.status.value}, not pending",
                    current_status=request.status.value
                )

            level = self._current_level(request)
            roles = self.auth.get_user_roles(tenant_id, decision.approver_id)
            eligible_roles = [role for role in roles if role in level.approver_roles]
            if not eligible_roles:
                raise UnauthorizedError(
                    "User does not have permission to approve at this level",
                    {"level": request.current_level, "required_roles": level.approver_roles}
                )

            already_decided = any(
                record.get("level") == request.current_level
                and record.get("approver_id") == str(decision.approver_id)
                for record in request.approvals or []
            )
            if already_decided:
                raise InvalidStateError(
                    "Approver has already decided on this level",
                    current_status=request.status.value
                )

            now = utcnow()
            record = ApprovalDecisionRecord(
                level=request.current_level,
                approver_id=decision.approver_id,
                approver_role=eligible_roles[0],
                decision=decision.decision,
                comments=decision.comments,
                approved_at=now
            )
            request.approvals = [*(request.approvals or []), record.model_dump(mode="json")]

            if decision.decision == ApprovalDecisionType.REJECTED:
                request.rejected_count += 1
                request.status = ApprovalStatus.REJECTED
                request.rejected_at = now
                request.approved_by = decision.approver_id
            else:
                request.approved_count += 1
                if request.approved_count >= request.required_approvals:
                    if request.current_level < request.total_levels:
                        next_level = ApprovalLevel.model_validate(request.approval_levels[request.current_level])
                        request.current_level += 1
                        request.approved_count = 0
                        request.rejected_count = 0
                        request.required_approvals = next_level.min_approvals
                    else:
                        request.status = ApprovalStatus.APPROVED
                        request.approved_at = now
                        request.approved_by = decision.approver_id

            self.db.flush()

            action = AuditAction.DELETE if request.status == ApprovalStatus.REJECTED else AuditAction.UPDATE
            audit_data = self._audit_data(request)
            audit_data["decision"] = record.model_dump(mode="json")
            self.audit.create_audit_log(
                tenant_id, decision.approver_id, action, AUDIT_TABLE, request.id,
                audit_data, store_id=request.store_id
            )

            if request.status in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
                self._dispatch_outcome(request, request.status, decision.approver_id, decision.comments)

        logger.info(
            f"Approval request {request.id} {decision.decision.value} by {decision.approver_id}: "
            f"status {request.status.value}, level {request.current_level}/{request.total_levels}"
        )
        return request

    def cancel_approval_request(
        self,
        request_id: UUID,
        tenant_id: UUID,
        cancelled_by_id: UUID,
        reason: Optional[str] = None,
        notify: bool = True,
        authorize: bool = True
    ) -> ApprovalRequest:
        """
        Cancel a pending request. Only the requester or a holder of an
        elevated role may cancel.

        The domain module cancelling its own object passes notify=False (its
        handler is not invoked back) and authorize=False (it already checked
        the caller).
        """
        with transaction(self.db):
            request = self.get_approval_request(tenant_id, request_id, for_update=True)
            if request.status != ApprovalStatus.PENDING:
                raise InvalidStateError(
                    f"Approval request is {request.status.value}, not pending",
                    current_status=request.status.value
                )

            if authorize and request.requested_by != cancelled_by_id:
                roles = self.auth.get_user_roles(tenant_id, cancelled_by_id)
                if not set(roles) & set(settings.APPROVAL_ELEVATED_ROLES):
                    raise UnauthorizedError("Only the requester or an admin/manager can cancel this request")

            request.status = ApprovalStatus.CANCELLED
            request.cancelled_at = utcnow()
            request.cancelled_by = cancelled_by_id
            request.cancellation_reason = reason
            self.db.flush()

            self.audit.create_audit_log(
                tenant_id, cancelled_by_id, AuditAction.DELETE, AUDIT_TABLE, request.id,
                self._audit_data(request), store_id=request.store_id
            )

            if notify:
                self._dispatch_outcome(request, ApprovalStatus.CANCELLED, cancelled_by_id, reason)

        logger.info(f"Approval request cancelled: {request.id}")
        return request

    def expire_overdue_requests(self, now: Optional[datetime] = None) -> int:
        """
        Move every pending request whose expires_at has passed to expired.
        Each request is handled in its own transaction; returns how many expired.
        """
        now = now or utcnow()
        overdue_ids = [
            row.id for row in self.db.query(ApprovalRequest.id).filter(
                ApprovalRequest.status == ApprovalStatus.PENDING,
                ApprovalRequest.expires_at.isnot(None),
                ApprovalRequest.expires_at < now
            ).all()
        ]

        expired = 0
        for request_id in overdue_ids:
            with transaction(self.db):
                request = self.db.query(ApprovalRequest).populate_existing().filter(
                    ApprovalRequest.id == request_id,
                    ApprovalRequest.status == ApprovalStatus.PENDING,
                    ApprovalRequest.expires_at < now
                ).with_for_update().first()
                if request is None:
                    continue

                request.status = ApprovalStatus.EXPIRED
                request.expired_at = now
                self.db.flush()

                self.audit.create_audit_log(
                    request.tenant_id, None, AuditAction.UPDATE, AUDIT_TABLE, request.id,
                    self._audit_data(request), store_id=request.store_id
                )
                self._dispatch_outcome(request, ApprovalStatus.EXPIRED, None, "Approval request expired")
                expired += 1

        if expired:
            logger.info(f"Expired {expired} overdue approval requests")
        return expired

    def _dispatch_outcome(
        self,
        request: ApprovalRequest,
        outcome: ApprovalStatus,
        actor_id: Optional[UUID],
        comments: Optional[str]
    ) -> None:
        if self.handlers is None:
            logger.warning(f"No approval outcome handlers configured; {outcome.value} for request {request.id} not dispatched")
            return
        try:
            with transaction(self.db):
                self.handlers.dispatch(self.db, request, outcome, actor_id, comments)
        except Exception as e:
            logger.error(
                f"Approval outcome handler failed for {request.object_type.value} {request.object_id} "
                f"({outcome.value}): {e}",
                exc_info=True
            )

    # ===== QUERIES =====

    def get_pending_approvals_for_user(self, user_id: UUID, tenant_id: UUID) -> List[ApprovalRequest]:
        """Pending requests whose current level lists one of the user's roles."""
        roles = set(self.auth.get_user_roles(tenant_id, user_id))
        if not roles:
            return []

        pending = self.db.query(ApprovalRequest).filter(
            ApprovalRequest.tenant_id == tenant_id,
            ApprovalRequest.status == ApprovalStatus.PENDING
        ).order_by(ApprovalRequest.created_at.desc()).all()

        result = []
        for request in pending:
            levels = request.approval_levels or []
            if 1 <= request.current_level <= len(levels):
                level_roles = set(levels[request.current_level - 1].get("approver_roles") or [])
                if roles & level_roles:
                    result.append(request)
        return result

    def list_approval_requests(
        self,
        tenant_id: UUID,
        status: Optional[ApprovalStatus] = None,
        object_type: Optional[ApprovalObjectType] = None,
        requested_by: Optional[UUID] = None,
        limit: int = settings.DEFAULT_PAGE_SIZE,
        offset: int = 0
    ) -> ApprovalRequestList:
        query = self.db.query(ApprovalRequest).options(
            selectinload(ApprovalRequest.requester),
            selectinload(ApprovalRequest.rule)
        ).filter(ApprovalRequest.tenant_id == tenant_id)

        if status:
            query = query.filter(ApprovalRequest.status == status)
        if object_type:
            query = query.filter(ApprovalRequest.object_type == object_type)
        if requested_by:
            query = query.filter(ApprovalRequest.requested_by == requested_by)

        total = query.count()
        requests = query.order_by(ApprovalRequest.created_at.desc()).offset(offset).limit(limit).all()

        return ApprovalRequestList(
            requests=[self.request_to_output(request) for request in requests],
            total=total,
            limit=limit,
            offset=offset
        )

    def get_approval_statistics(
        self,
        tenant_id: UUID,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None
    ) -> ApprovalStatistics:
        filters = [ApprovalRequest.tenant_id == tenant_id]
        if date_from:
            filters.append(ApprovalRequest.created_at >= date_from)
        if date_to:
            filters.append(ApprovalRequest.created_at <= date_to)

        counts = dict(
            self.db.query(ApprovalRequest.status, func.count(ApprovalRequest.id))
            .filter(*filters)
            .group_by(ApprovalRequest.status)
            .all()
        )

        # Auto-approved requests carry required_approvals == 0 and are left out of the average
        approved = self.db.query(ApprovalRequest.created_at, ApprovalRequest.approved_at).filter(
            *filters,
            ApprovalRequest.status == ApprovalStatus.APPROVED,
            ApprovalRequest.approved_at.isnot(None),
            ApprovalRequest.required_approvals > 0
        ).all()
        average_hours = None
        if approved:
            total_seconds = sum(
                (_naive(row.approved_at) - _naive(row.created_at)).total_seconds() for row in approved
            )
            average_hours = round(total_seconds / len(approved) / 3600, 2)

        return ApprovalStatistics(
            total_requests=sum(counts.values()),
            pending_requests=counts.get(ApprovalStatus.PENDING, 0),
            approved_requests=counts.get(ApprovalStatus.APPROVED, 0),
            rejected_requests=counts.get(ApprovalStatus.REJECTED, 0),
            cancelled_requests=counts.get(ApprovalStatus.CANCELLED, 0),
            expired_requests=counts.get(ApprovalStatus.EXPIRED, 0),
            average_approval_hours=average_hours
        )

    # ===== OUTPUT =====

    def _audit_data(self, request: ApprovalRequest) -> dict:
        return {
            "object_type": request.object_type.value,
            "object_id": request.object_id,
            "status": request.status.value,
            "current_level": request.current_level,
            "total_levels": request.total_levels,
            "approved_count": request.approved_count,
            "rejected_count": request.rejected_count,
        }

    def request_to_output(self, request: ApprovalRequest) -> ApprovalRequestOut:
        output = ApprovalRequestOut.model_validate(request)
        requester = request.requester
        return output.model_copy(update={
            "requester_name": (requester.full_name or requester.email) if requester else None,
            "rule_name": request.rule.name if request.rule else None,
        })

    def rule_to_output(self, rule: ApprovalRule) -> ApprovalRuleOut:
        return ApprovalRuleOut.model_validate(rule)
