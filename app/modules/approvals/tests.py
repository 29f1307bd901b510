"""
Tests for approval rules and the approval request state machine
"""

import logging
import pytest
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from app.common.mixins import utcnow
from app.core.exceptions import (
    DuplicateRecordError, InvalidStateError, NotFoundError, UnauthorizedError, ValidationError
)
from app.core.registry import build_approval_handlers
from app.modules.approvals.matcher import matches_rule_conditions
from app.modules.approvals.models import (
    ApprovalDecisionType, ApprovalObjectType, ApprovalRule, ApprovalStatus
)
from app.modules.approvals.schemas import (
    ApprovalData, ApprovalDecisionIn, ApprovalRequestCreate, ApprovalRuleConditions,
    ApprovalRuleCreate, ApprovalRuleUpdate
)
from app.modules.approvals.service import AUTO_APPROVED_COMMENT, ApprovalService
from app.modules.audit.models import AuditAction, AuditLog


# ===== FIXTURES =====

@pytest.fixture
def service(db_session):
    return ApprovalService(db_session, handlers=build_approval_handlers())


def rule_payload(levels, name="Sales over 1000", object_type=ApprovalObjectType.SALE, **conditions):
    return ApprovalRuleCreate(
        name=name,
        object_type=object_type,
        conditions=ApprovalRuleConditions(
            approval_levels=[
                {"level": index, "approver_roles": roles, "min_approvals": minimum}
                for index, (roles, minimum) in enumerate(levels, start=1)
            ],
            requires_approval=bool(levels),
            **conditions
        )
    )


def request_payload(amount="1500", object_type=ApprovalObjectType.SALE, store_id=None):
    return ApprovalRequestCreate(
        object_type=object_type,
        object_id=uuid4(),
        title="Large sale",
        store_id=store_id,
        approval_data=ApprovalData(amount=Decimal(amount), store_id=store_id)
    )


def decide(service, request, tenant_id, user, decision=ApprovalDecisionType.APPROVED, comments=None):
    return service.process_approval(
        request.id, tenant_id,
        ApprovalDecisionIn(approver_id=user.id, decision=decision, comments=comments)
    )


@pytest.fixture
def two_level_rule(service, tenant_id, users):
    return service.create_rule(
        tenant_id, rule_payload([(["manager"], 1), (["finance"], 1)], min_amount=Decimal("1000")), users.admin.id
    )


# ===== MATCHING =====

class TestRuleConditions:

    def test_amount_bounds(self):
        conditions = ApprovalRuleConditions(
            min_amount=Decimal("100"), max_amount=Decimal("500"),
            approval_levels=[{"level": 1, "approver_roles": ["manager"]}]
        )

        assert matches_rule_conditions(conditions, ApprovalData(amount=Decimal("100")))
        assert matches_rule_conditions(conditions, ApprovalData(amount=Decimal("500")))
        assert not matches_rule_conditions(conditions, ApprovalData(amount=Decimal("99.99")))
        assert not matches_rule_conditions(conditions, ApprovalData(amount=Decimal("500.01")))

    def test_missing_amount_does_not_reject(self):
        conditions = ApprovalRuleConditions(
            min_amount=Decimal("100"),
            approval_levels=[{"level": 1, "approver_roles": ["manager"]}]
        )

        assert matches_rule_conditions(conditions, ApprovalData())

    def test_store_ids(self):
        allowed, other = uuid4(), uuid4()
        conditions = ApprovalRuleConditions(
            store_ids=[allowed],
            approval_levels=[{"level": 1, "approver_roles": ["manager"]}]
        )

        assert matches_rule_conditions(conditions, ApprovalData(), allowed)
        assert not matches_rule_conditions(conditions, ApprovalData(), other)
        assert matches_rule_conditions(conditions, ApprovalData(), None)

    def test_no_conditions_never_match(self):
        assert not matches_rule_conditions(None, ApprovalData(amount=Decimal("1")))

    def test_min_greater_than_max_rejected(self):
        with pytest.raises(PydanticValidationError):
            ApprovalRuleConditions(
                min_amount=Decimal("10"), max_amount=Decimal("5"),
                approval_levels=[{"level": 1, "approver_roles": ["manager"]}]
            )

    def test_levels_must_be_contiguous(self):
        with pytest.raises(PydanticValidationError):
            ApprovalRuleConditions(approval_levels=[
                {"level": 1, "approver_roles": ["manager"]},
                {"level": 3, "approver_roles": ["finance"]},
            ])

    def test_requires_approval_needs_levels(self):
        with pytest.raises(PydanticValidationError):
            ApprovalRuleConditions(requires_approval=True, approval_levels=[])

    def test_levels_are_sorted(self):
        conditions = ApprovalRuleConditions(approval_levels=[
            {"level": 2, "approver_roles": ["finance"]},
            {"level": 1, "approver_roles": ["manager"]},
        ])

        assert [level.level for level in conditions.approval_levels] == [1, 2]


class TestRuleMatching:

    def test_matches_within_bounds(self, service, tenant_id, two_level_rule):
        rule = service.find_applicable_rule(tenant_id, ApprovalObjectType.SALE, ApprovalData(amount=Decimal("1500")))

        assert rule.id == two_level_rule.id
        assert service.is_approval_required(tenant_id, ApprovalObjectType.SALE, ApprovalData(amount=Decimal("1500")))
        assert not service.is_approval_required(tenant_id, ApprovalObjectType.SALE, ApprovalData(amount=Decimal("50")))

    def test_other_object_type_ignored(self, service, tenant_id, two_level_rule):
        assert service.find_applicable_rule(
            tenant_id, ApprovalObjectType.REFUND, ApprovalData(amount=Decimal("1500"))
        ) is None

    def test_other_tenant_ignored(self, service, two_level_rule):
        assert service.find_applicable_rule(
            uuid4(), ApprovalObjectType.SALE, ApprovalData(amount=Decimal("1500"))
        ) is None

    def test_newest_rule_wins_over_narrower_one(self, db_session, service, tenant_id, users):
        narrow = service.create_rule(
            tenant_id, rule_payload([(["manager"], 1)], name="Narrow", min_amount=Decimal("1000")), users.admin.id
        )
        narrow.created_at = utcnow() - timedelta(minutes=5)
        db_session.commit()
        broad = service.create_rule(tenant_id, rule_payload([], name="Broad"), users.admin.id)

        rule = service.find_applicable_rule(tenant_id, ApprovalObjectType.SALE, ApprovalData(amount=Decimal("5000")))

        assert rule.id == broad.id
        assert not service.rule_requires_approval(rule)

    def test_inactive_rules_skipped(self, service, tenant_id, two_level_rule):
        service.deactivate_rule(tenant_id, two_level_rule.id)

        assert service.find_applicable_rule(
            tenant_id, ApprovalObjectType.SALE, ApprovalData(amount=Decimal("1500"))
        ) is None

    def test_rule_with_invalid_conditions_skipped(self, db_session, service, tenant_id):
        db_session.add(ApprovalRule(
            tenant_id=tenant_id,
            name="Broken",
            object_type=ApprovalObjectType.SALE,
            conditions={"requires_approval": True, "approval_levels": []}
        ))
        db_session.commit()

        assert service.find_applicable_rule(tenant_id, ApprovalObjectType.SALE, ApprovalData()) is None

    def test_store_restricted_rule(self, service, tenant_id, users, stores):
        service.create_rule(
            tenant_id, rule_payload([(["manager"], 1)], store_ids=[stores.other.id]), users.admin.id
        )

        assert service.find_applicable_rule(
            tenant_id, ApprovalObjectType.SALE, ApprovalData(), stores.source.id
        ) is None
        assert service.find_applicable_rule(
            tenant_id, ApprovalObjectType.SALE, ApprovalData(), stores.other.id
        ) is not None


# ===== REQUEST LIFECYCLE =====

class TestCreateRequest:

    def test_auto_approved_without_rule(self, db_session, service, tenant_id, users):
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload("50"))

        assert request.status == ApprovalStatus.APPROVED
        assert request.required_approvals == 0
        assert request.approved_count == 1
        assert request.approval_levels == []
        assert len(request.approvals) == 1
        record = request.approvals[0]
        assert record["approver_role"] == "system"
        assert record["approver_id"] == str(users.requester.id)
        assert record["comments"] == AUTO_APPROVED_COMMENT
        assert request.approved_at is not None

    def test_pending_with_rule(self, service, tenant_id, users, two_level_rule):
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        assert request.status == ApprovalStatus.PENDING
        assert request.approval_rule_id == two_level_rule.id
        assert request.current_level == 1
        assert request.total_levels == 2
        assert request.required_approvals == 1
        assert request.approved_count == 0
        assert request.approvals == []
        assert request.expires_at is not None

    def test_rule_expiry_hours(self, service, tenant_id, users):
        service.create_rule(tenant_id, rule_payload([(["manager"], 1)], expiry_hours=2), users.admin.id)
        before = utcnow().replace(tzinfo=None)

        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        expires_at = request.expires_at.replace(tzinfo=None)
        assert timedelta(hours=1, minutes=59) < expires_at - before <= timedelta(hours=2, minutes=1)

    def test_one_pending_request_per_object(self, service, tenant_id, users, two_level_rule):
        first = service.create_approval_request(tenant_id, users.requester.id, request_payload())
        again = request_payload().model_copy(update={"object_id": first.object_id})

        with pytest.raises(DuplicateRecordError):
            service.create_approval_request(tenant_id, users.manager.id, again)

        service.cancel_approval_request(first.id, tenant_id, users.requester.id)
        assert service.create_approval_request(tenant_id, users.manager.id, again).status == ApprovalStatus.PENDING

    def test_handled_object_types_are_opened_by_their_module(self, service, tenant_id, users):
        with pytest.raises(ValidationError):
            service.submit_approval_request(
                tenant_id, users.manager.id, request_payload("1", object_type=ApprovalObjectType.INVENTORY_TRANSFER)
            )

        request = service.submit_approval_request(tenant_id, users.requester.id, request_payload("1"))
        assert request.object_type == ApprovalObjectType.SALE

    def test_creation_is_audited(self, db_session, service, tenant_id, users):
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload("10"))

        log = db_session.query(AuditLog).filter_by(object_id=request.id).one()
        assert log.action == AuditAction.INSERT.value
        assert log.object_table == "approval_request"
        assert log.data["status"] == "approved"


class TestProcessApproval:

    def test_two_level_flow(self, db_session, service, tenant_id, users, two_level_rule):
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        request = decide(service, request, tenant_id, users.manager, comments="ok")

        assert request.status == ApprovalStatus.PENDING
        assert request.current_level == 2
        assert request.approved_count == 0
        assert request.rejected_count == 0
        assert request.required_approvals == 1
        assert request.approvals[0]["approver_role"] == "manager"

        request = decide(service, request, tenant_id, users.finance)

        assert request.status == ApprovalStatus.APPROVED
        assert request.approved_by == users.finance.id
        assert request.approved_at is not None
        assert [record["level"] for record in request.approvals] == [1, 2]

    def test_wrong_role_for_level(self, db_session, service, tenant_id, users, two_level_rule):
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        with pytest.raises(UnauthorizedError):
            decide(service, request, tenant_id, users.finance)

        request = service.get_approval_request(tenant_id, request.id)
        assert request.status == ApprovalStatus.PENDING
        assert request.current_level == 1
        assert request.approvals == []

    def test_non_member_cannot_decide(self, service, tenant_id, users, two_level_rule):
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        with pytest.raises(UnauthorizedError):
            service.process_approval(
                request.id, tenant_id,
                ApprovalDecisionIn(approver_id=uuid4(), decision=ApprovalDecisionType.APPROVED)
            )

    def test_rejection_is_terminal(self, db_session, service, tenant_id, users, two_level_rule):
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        request = decide(service, request, tenant_id, users.manager, ApprovalDecisionType.REJECTED, "Too much")

        assert request.status == ApprovalStatus.REJECTED
        assert request.rejected_count == 1
        assert request.rejected_at is not None
        assert request.approved_by == users.manager.id

        with pytest.raises(InvalidStateError):
            decide(service, request, tenant_id, users.finance)

        log = db_session.query(AuditLog).filter_by(object_id=request.id, action=AuditAction.DELETE.value).one()
        assert log.data["decision"]["comments"] == "Too much"

    def test_min_approvals_needs_distinct_approvers(self, service, tenant_id, users):
        service.create_rule(tenant_id, rule_payload([(["manager"], 2)]), users.admin.id)
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        request = decide(service, request, tenant_id, users.manager)
        assert request.status == ApprovalStatus.PENDING
        assert request.approved_count == 1

        with pytest.raises(InvalidStateError):
            decide(service, request, tenant_id, users.manager)

        request = decide(service, request, tenant_id, users.second_manager)
        assert request.status == ApprovalStatus.APPROVED
        assert request.approved_count == 2

    def test_unknown_request(self, service, tenant_id, users):
        with pytest.raises(NotFoundError):
            service.process_approval(
                uuid4(), tenant_id,
                ApprovalDecisionIn(approver_id=users.manager.id, decision=ApprovalDecisionType.APPROVED)
            )

    def test_request_of_other_tenant_not_found(self, service, tenant_id, users, two_level_rule):
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        with pytest.raises(NotFoundError):
            service.get_approval_request(uuid4(), request.id)

    def test_unregistered_object_type_still_approved(self, service, tenant_id, users, caplog):
        service.create_rule(tenant_id, rule_payload([(["manager"], 1)]), users.admin.id)
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        with caplog.at_level(logging.ERROR):
            request = decide(service, request, tenant_id, users.manager)

        assert request.status == ApprovalStatus.APPROVED
        assert "Approval outcome handler failed" in caplog.text

    def test_rule_edit_does_not_touch_existing_requests(self, service, tenant_id, users):
        rule = service.create_rule(tenant_id, rule_payload([(["manager"], 1)]), users.admin.id)
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        service.update_rule(tenant_id, rule.id, ApprovalRuleUpdate(
            conditions=ApprovalRuleConditions(approval_levels=[{"level": 1, "approver_roles": ["finance"]}])
        ))

        request = service.get_approval_request(tenant_id, request.id)
        assert request.approval_levels[0]["approver_roles"] == ["manager"]
        request = decide(service, request, tenant_id, users.manager)
        assert request.status == ApprovalStatus.APPROVED

        newer = service.create_approval_request(tenant_id, users.requester.id, request_payload())
        assert newer.approval_levels[0]["approver_roles"] == ["finance"]

    def test_level_max_amount_is_recorded_only(self, service, tenant_id, users):
        service.create_rule(tenant_id, ApprovalRuleCreate(
            name="Capped level",
            object_type=ApprovalObjectType.SALE,
            conditions=ApprovalRuleConditions(approval_levels=[
                {"level": 1, "approver_roles": ["manager"], "max_amount": "100"}
            ])
        ), users.admin.id)
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload("1500"))

        assert Decimal(request.approval_levels[0]["max_amount"]) == Decimal("100")
        request = decide(service, request, tenant_id, users.manager)
        assert request.status == ApprovalStatus.APPROVED


class TestCancelRequest:

    def test_requester_can_cancel(self, service, tenant_id, users, two_level_rule):
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        request = service.cancel_approval_request(request.id, tenant_id, users.requester.id, "Changed my mind")

        assert request.status == ApprovalStatus.CANCELLED
        assert request.cancelled_by == users.requester.id
        assert request.cancellation_reason == "Changed my mind"
        assert request.cancelled_at is not None

    def test_manager_can_cancel(self, service, tenant_id, users, two_level_rule):
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        request = service.cancel_approval_request(request.id, tenant_id, users.manager.id)

        assert request.status == ApprovalStatus.CANCELLED

    def test_other_user_cannot_cancel(self, service, tenant_id, users, two_level_rule):
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        with pytest.raises(UnauthorizedError):
            service.cancel_approval_request(request.id, tenant_id, users.viewer.id)

        assert service.get_approval_request(tenant_id, request.id).status == ApprovalStatus.PENDING

    def test_cannot_cancel_decided_request(self, service, tenant_id, users):
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload("1"))

        with pytest.raises(InvalidStateError):
            service.cancel_approval_request(request.id, tenant_id, users.requester.id)


class TestPendingForUser:

    def test_only_current_level_roles(self, service, tenant_id, users, two_level_rule):
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        assert [r.id for r in service.get_pending_approvals_for_user(users.manager.id, tenant_id)] == [request.id]
        assert service.get_pending_approvals_for_user(users.finance.id, tenant_id) == []

        decide(service, request, tenant_id, users.manager)

        assert service.get_pending_approvals_for_user(users.manager.id, tenant_id) == []
        assert [r.id for r in service.get_pending_approvals_for_user(users.finance.id, tenant_id)] == [request.id]

    def test_non_member_sees_nothing(self, service, tenant_id, users, two_level_rule):
        service.create_approval_request(tenant_id, users.requester.id, request_payload())

        assert service.get_pending_approvals_for_user(uuid4(), tenant_id) == []


class TestExpiry:

    def test_overdue_requests_expire(self, db_session, service, tenant_id, users):
        service.create_rule(tenant_id, rule_payload([(["manager"], 1)], expiry_hours=1), users.admin.id)
        overdue = service.create_approval_request(tenant_id, users.requester.id, request_payload())
        decided = service.create_approval_request(
            tenant_id, users.requester.id, request_payload("1", object_type=ApprovalObjectType.REFUND)
        )

        expired = service.expire_overdue_requests(now=utcnow() + timedelta(hours=2))

        assert expired == 1
        overdue = service.get_approval_request(tenant_id, overdue.id)
        assert overdue.status == ApprovalStatus.EXPIRED
        assert overdue.expired_at is not None
        assert service.get_approval_request(tenant_id, decided.id).status == ApprovalStatus.APPROVED

        with pytest.raises(InvalidStateError):
            decide(service, overdue, tenant_id, users.manager)

    def test_nothing_expires_early(self, service, tenant_id, users):
        service.create_rule(tenant_id, rule_payload([(["manager"], 1)], expiry_hours=1), users.admin.id)
        service.create_approval_request(tenant_id, users.requester.id, request_payload())

        assert service.expire_overdue_requests() == 0

    def test_sweep_covers_all_tenants(self, service, tenant_id, users, user_factory):
        other_tenant = uuid4()
        other_admin = user_factory(other_tenant, ["admin"])
        other_cashier = user_factory(other_tenant, ["cashier"])
        for tenant, admin, requester in ((tenant_id, users.admin, users.requester), (other_tenant, other_admin, other_cashier)):
            service.create_rule(tenant, rule_payload([(["manager"], 1)], expiry_hours=1), admin.id)
            service.create_approval_request(tenant, requester.id, request_payload())

        assert service.expire_overdue_requests(now=utcnow() + timedelta(hours=2)) == 2


class TestStatistics:

    def test_counts_by_status(self, service, tenant_id, users, two_level_rule):
        service.create_approval_request(tenant_id, users.requester.id, request_payload("10"))
        pending = service.create_approval_request(tenant_id, users.requester.id, request_payload())
        rejected = service.create_approval_request(tenant_id, users.requester.id, request_payload())
        decide(service, rejected, tenant_id, users.manager, ApprovalDecisionType.REJECTED)

        stats = service.get_approval_statistics(tenant_id)

        assert stats.total_requests == 3
        assert stats.approved_requests == 1
        assert stats.pending_requests == 1
        assert stats.rejected_requests == 1
        # The only approved request was auto-approved
        assert stats.average_approval_hours is None
        assert pending.status == ApprovalStatus.PENDING

    def test_average_hours(self, db_session, service, tenant_id, users):
        service.create_rule(tenant_id, rule_payload([(["manager"], 1)]), users.admin.id)
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())
        request.created_at = utcnow() - timedelta(hours=3)
        db_session.commit()

        decide(service, request, tenant_id, users.manager)
        stats = service.get_approval_statistics(tenant_id)

        assert stats.approved_requests == 1
        assert stats.average_approval_hours == pytest.approx(3, abs=0.05)


# ===== HTTP =====

class TestApprovalEndpoints:

    RULE = {
        "name": "Refunds",
        "object_type": "refund",
        "conditions": {
            "min_amount": "100",
            "approval_levels": [{"level": 1, "approver_roles": ["manager"], "min_approvals": 1}]
        }
    }

    def test_create_rule_requires_admin(self, client, auth_headers, users):
        response = client.post("/api/v1/approvals/rules", json=self.RULE, headers=auth_headers(users.manager))

        assert response.status_code == 403

    def test_rule_and_request_flow(self, client, auth_headers, users):
        response = client.post("/api/v1/approvals/rules", json=self.RULE, headers=auth_headers(users.admin))
        assert response.status_code == 201
        assert response.json()["data"]["conditions"]["approval_levels"][0]["approver_roles"] == ["manager"]

        response = client.post(
            "/api/v1/approvals/requests",
            json={
                "object_type": "refund",
                "object_id": str(uuid4()),
                "title": "Refund ticket 88",
                "approval_data": {"amount": "250"}
            },
            headers=auth_headers(users.requester)
        )
        assert response.status_code == 201
        created = response.json()["data"]
        assert created["status"] == "pending"
        assert created["rule_name"] == "Refunds"
        assert created["requester_name"] == "cashier@example.com"

        response = client.get("/api/v1/approvals/requests/pending", headers=auth_headers(users.manager))
        assert [item["id"] for item in response.json()["data"]] == [created["id"]]

        response = client.post(
            f"/api/v1/approvals/requests/{created['id']}/decision",
            json={"decision": "approved", "comments": "fine"},
            headers=auth_headers(users.manager)
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "approved"

    def test_decision_by_wrong_role_is_403(self, client, auth_headers, users, db_session, tenant_id):
        service = ApprovalService(db_session)
        service.create_rule(tenant_id, rule_payload([(["finance"], 1)]), users.admin.id)
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        response = client.post(
            f"/api/v1/approvals/requests/{request.id}/decision",
            json={"decision": "approved"},
            headers=auth_headers(users.manager)
        )

        assert response.status_code == 403
        assert response.json()["error"] == "UNAUTHORIZED"

    def test_cancel_without_body(self, client, auth_headers, users, db_session, tenant_id):
        service = ApprovalService(db_session)
        service.create_rule(tenant_id, rule_payload([(["finance"], 1)]), users.admin.id)
        request = service.create_approval_request(tenant_id, users.requester.id, request_payload())

        response = client.post(
            f"/api/v1/approvals/requests/{request.id}/cancel",
            headers=auth_headers(users.requester)
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "cancelled"

    def test_unknown_request_is_404(self, client, auth_headers, users):
        response = client.get(f"/api/v1/approvals/requests/{uuid4()}", headers=auth_headers(users.viewer))

        assert response.status_code == 404

    def test_statistics(self, client, auth_headers, users):
        response = client.get("/api/v1/approvals/statistics", headers=auth_headers(users.finance))

        assert response.status_code == 200
        assert response.json()["data"]["total_requests"] == 0

    def test_invalid_rule_levels_rejected(self, client, auth_headers, users):
        payload = {
            "name": "Broken",
            "object_type": "sale",
            "conditions": {"approval_levels": [{"level": 2, "approver_roles": ["manager"]}]}
        }

        response = client.post("/api/v1/approvals/rules", json=payload, headers=auth_headers(users.admin))

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"
