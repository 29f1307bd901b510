"""
Approval rule matching.

Active rules for (tenant, object type) are scanned newest first and the first
rule whose conditions match wins. Ordering is by recency, not specificity: a
broad rule created after a narrow one shadows it.
"""
import logging
from typing import Any, Dict, Optional, Union
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.modules.approvals.models import ApprovalRule, ApprovalObjectType
from app.modules.approvals.schemas import ApprovalRuleConditions, ApprovalData

logger = logging.getLogger(__name__)


def matches_rule_conditions(
    conditions: Optional[ApprovalRuleConditions],
    approval_data: ApprovalData,
    store_id: Optional[UUID] = None
) -> bool:
    """
    Amount bounds only reject when both the bound and the amount are present.
    store_ids only restrict when non-empty and a store id is supplied.
    """
    if conditions is None:
        return False

    amount = approval_data.amount
    if conditions.min_amount is not None and amount is not None and amount < conditions.min_amount:
        return False
    if conditions.max_amount is not None and amount is not None and amount > conditions.max_amount:
        return False

    if conditions.store_ids and store_id is not None:
        if store_id not in conditions.store_ids:
            return False

    return True


def parse_conditions(rule: ApprovalRule) -> Optional[ApprovalRuleConditions]:
    if not rule.conditions:
        return None
    try:
        return ApprovalRuleConditions.model_validate(rule.conditions)
    except PydanticValidationError as e:
        logger.warning(f"Approval rule {rule.id} has invalid conditions and is skipped: {e}")
        return None


class ApprovalRuleMatcher:
    """Find the applicable approval rule for an operation."""

    def __init__(self, db: Session):
        self.db = db

    def find_applicable_rule(
        self,
        tenant_id: UUID,
        object_type: ApprovalObjectType,
        approval_data: Union[ApprovalData, Dict[str, Any]],
        store_id: Optional[UUID] = None
    ) -> Optional[ApprovalRule]:
        if not isinstance(approval_data, ApprovalData):
            approval_data = ApprovalData.model_validate(approval_data)

        rules = self.db.query(ApprovalRule).filter(
            ApprovalRule.tenant_id == tenant_id,
            ApprovalRule.object_type == object_type,
            ApprovalRule.is_active == True,
            ApprovalRule.deleted_at.is_(None)
        ).order_by(
            ApprovalRule.created_at.desc(),
            ApprovalRule.id.desc()
        ).all()

        for rule in rules:
            if matches_rule_conditions(parse_conditions(rule), approval_data, store_id):
                logger.debug(f"Approval rule '{rule.name}' matched {object_type.value}")
                return rule

        return None
