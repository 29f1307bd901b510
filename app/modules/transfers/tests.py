"""
Tests for inventory transfers and their approval outcomes

Covers:
- auto-approved and approval-gated creation
- ship / complete / cancel against the source and destination ledgers
- decisions routed through the linked approval request
- handler failures, expiry and numbering
- bulk transfers and their item transfers
"""

import logging
import re
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from app.common.mixins import utcnow
from app.core.config import settings
from app.core.exceptions import (
    DuplicateRecordError, InsufficientInventoryError, InvalidStateError,
    NotFoundError, UnauthorizedError, ValidationError
)
from app.core.registry import build_approval_handlers
from app.modules.approvals.models import ApprovalDecisionType, ApprovalObjectType, ApprovalStatus
from app.modules.approvals.schemas import (
    ApprovalData, ApprovalDecisionIn, ApprovalRequestCreate, ApprovalRuleConditions, ApprovalRuleCreate
)
from app.modules.approvals.service import ApprovalService
from app.modules.inventory.models import InventoryMovement, InventoryRecord
from app.modules.inventory.schemas import MovementType
from app.modules.inventory.service import InventoryService
from app.modules.products.models import Product
from app.modules.stores.models import Store
from app.modules.transfers.bulk import BulkInventoryTransferService
from app.modules.transfers.models import (
    BulkInventoryTransfer, BulkTransferStatus, BulkTransferType, InventoryTransfer, TransferStatus
)
from app.modules.transfers.schemas import BulkTransferCreate, BulkTransferItemCreate, TransferCreate
from app.modules.transfers.service import InventoryTransferService


# ===== FIXTURES =====

@pytest.fixture
def approvals(db_session):
    return ApprovalService(db_session, handlers=build_approval_handlers())


@pytest.fixture
def service(db_session, approvals):
    return InventoryTransferService(db_session, approvals=approvals)


@pytest.fixture
def inventory(db_session):
    return InventoryService(db_session)


@pytest.fixture
def manager_rule(approvals, tenant_id, users):
    """Transfers worth 500 or more need one manager approval."""
    return approvals.create_rule(
        tenant_id,
        ApprovalRuleCreate(
            name="Large transfers",
            object_type=ApprovalObjectType.INVENTORY_TRANSFER,
            conditions=ApprovalRuleConditions(
                min_amount=Decimal("500"),
                approval_levels=[{"level": 1, "approver_roles": ["manager"], "min_approvals": 1}],
                expiry_hours=1
            )
        ),
        users.admin.id
    )


def transfer_data(stores, product, quantity="10", **extra):
    return TransferCreate(
        source_store_id=stores.source.id,
        destination_store_id=stores.destination.id,
        product_id=product.id,
        quantity=Decimal(quantity),
        **extra
    )


def source_record(inventory, tenant_id, stores, product):
    return inventory.get_record(tenant_id, stores.source.id, product.id)


def linked_request(approvals, tenant_id, transfer):
    if transfer.approval_request_id is None:
        return None
    return approvals.get_approval_request(tenant_id, transfer.approval_request_id)


def request_naming(transfer, amount):
    return ApprovalRequestCreate(
        object_type=ApprovalObjectType.INVENTORY_TRANSFER,
        object_id=transfer.id,
        title="Second opinion",
        approval_data=ApprovalData(amount=Decimal(amount))
    )


# ===== CREATE =====

class TestCreateTransfer:

    def test_auto_approved_reserves_immediately(self, service, inventory, approvals, tenant_id, users, stores, product, source_inventory):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product))

        assert transfer.status == TransferStatus.APPROVED
        assert transfer.approved_by == users.requester.id
        assert transfer.unit_cost == Decimal("10.00")
        record = source_record(inventory, tenant_id, stores, product)
        assert record.quantity_reserved == Decimal("10")
        assert record.quantity_on_hand == Decimal("100")
        assert linked_request(approvals, tenant_id, transfer) is None

    def test_rule_makes_transfer_pending(self, service, inventory, approvals, tenant_id, users, stores, product, source_inventory, manager_rule):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))

        assert transfer.status == TransferStatus.PENDING
        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("0")
        request = linked_request(approvals, tenant_id, transfer)
        assert request.status == ApprovalStatus.PENDING
        assert request.approval_rule_id == manager_rule.id
        assert request.store_id == stores.source.id
        assert Decimal(request.approval_data["amount"]) == Decimal("600.00")
        assert request.approval_data["metadata"]["destination_store_id"] == str(stores.destination.id)

    def test_below_rule_threshold_is_auto_approved(self, service, tenant_id, users, stores, product, source_inventory, manager_rule):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "49"))

        assert transfer.status == TransferStatus.APPROVED

    def test_insufficient_inventory(self, db_session, service, tenant_id, users, stores, product, source_inventory):
        with pytest.raises(InsufficientInventoryError) as exc:
            service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "150"))

        assert exc.value.available == Decimal("100")
        assert db_session.query(InventoryTransfer).count() == 0

    def test_reserved_stock_is_not_available(self, service, inventory, tenant_id, users, stores, product, source_inventory):
        inventory.reserve(tenant_id, stores.source.id, product.id, 95)

        with pytest.raises(InsufficientInventoryError):
            service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "6"))

    def test_no_source_record(self, service, tenant_id, users, stores, product):
        with pytest.raises(InsufficientInventoryError):
            service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product))

    def test_same_store_rejected(self, service, tenant_id, users, stores, product, source_inventory):
        with pytest.raises(PydanticValidationError):
            TransferCreate(
                source_store_id=stores.source.id, destination_store_id=stores.source.id,
                product_id=product.id, quantity=Decimal("1")
            )

        unchecked = TransferCreate.model_construct(
            source_store_id=stores.source.id, destination_store_id=stores.source.id,
            product_id=product.id, quantity=Decimal("1"), notes=None, reference=None
        )
        with pytest.raises(ValidationError):
            service.create_transfer(tenant_id, users.requester.id, unchecked)

    def test_unknown_destination_store(self, service, tenant_id, users, stores, product, source_inventory):
        data = TransferCreate(
            source_store_id=stores.source.id, destination_store_id=uuid4(),
            product_id=product.id, quantity=Decimal("1")
        )

        with pytest.raises(NotFoundError):
            service.create_transfer(tenant_id, users.requester.id, data)


class TestTransferNumbers:

    def test_format_and_sequence(self, service, tenant_id, users, stores, product, source_inventory):
        first = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "1"))
        second = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "1"))

        today = utcnow().strftime("%Y%m%d")
        assert re.fullmatch(r"TRF-\d{8}-\d{4}", first.transfer_number)
        assert first.transfer_number == f"TRF-{today}-0001"
        assert second.transfer_number == f"TRF-{today}-0002"

    def test_date_follows_configured_timezone(self, service, monkeypatch):
        just_after_utc_midnight = datetime(2026, 3, 1, 3, 30, tzinfo=timezone.utc)

        assert service._transfer_number_prefix(just_after_utc_midnight) == "TRF-20260301-"
        monkeypatch.setattr(settings, "TRANSFER_NUMBER_TIMEZONE", "America/Bogota")
        assert service._transfer_number_prefix(just_after_utc_midnight) == "TRF-20260228-"

    def test_sequence_restarts_at_local_midnight(self, service, tenant_id, users, stores, product, source_inventory, monkeypatch):
        monkeypatch.setattr(settings, "TRANSFER_NUMBER_TIMEZONE", "America/Bogota")
        clock = iter([
            datetime(2026, 3, 1, 4, 50, tzinfo=timezone.utc),  # 23:50 Feb 28 in Bogota
            datetime(2026, 3, 1, 5, 10, tzinfo=timezone.utc),  # 00:10 Mar 1 in Bogota
        ])

        def prefix_at_next_tick():
            return InventoryTransferService._transfer_number_prefix(service, next(clock))

        monkeypatch.setattr(service, "_transfer_number_prefix", prefix_at_next_tick)

        before = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "1"))
        after = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "1"))

        assert before.transfer_number == "TRF-20260228-0001"
        assert after.transfer_number == "TRF-20260301-0001"

    def test_collision_moves_to_next_number(self, db_session, service, tenant_id, users, stores, product, source_inventory):
        first = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "1"))
        prefix = first.transfer_number[:-4]
        first.transfer_number = f"{prefix}0002"
        db_session.commit()

        second = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "1"))

        assert second.transfer_number == f"{prefix}0003"

    def test_numbers_are_per_tenant(self, db_session, service, tenant_id, users, stores, product, source_inventory, user_factory):
        service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "1"))

        other_tenant = uuid4()
        requester = user_factory(other_tenant, ["cashier"])
        source = Store(tenant_id=other_tenant, name="Other Main", code="MAIN")
        destination = Store(tenant_id=other_tenant, name="Other North", code="NORTH")
        item = Product(tenant_id=other_tenant, name="Arroz", sku="ARZ-001")
        db_session.add_all([source, destination, item])
        db_session.flush()
        db_session.add(InventoryRecord(
            tenant_id=other_tenant, store_id=source.id, product_id=item.id,
            quantity_on_hand=Decimal("5"), quantity_reserved=Decimal("0"), unit_cost=Decimal("1.00")
        ))
        db_session.commit()

        transfer = service.create_transfer(other_tenant, requester.id, TransferCreate(
            source_store_id=source.id, destination_store_id=destination.id,
            product_id=item.id, quantity=Decimal("1")
        ))

        assert transfer.transfer_number.endswith("-0001")

    def test_gives_up_after_retries(self, db_session, service, tenant_id, users, stores, product, source_inventory, monkeypatch):
        monkeypatch.setattr(service, "_number_exists", lambda tenant, number: True)

        with pytest.raises(DuplicateRecordError):
            service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "1"))

        assert db_session.query(InventoryTransfer).count() == 0
        assert source_record(InventoryService(db_session), tenant_id, stores, product).quantity_reserved == Decimal("0")


# ===== TRANSITIONS =====

class TestShipAndComplete:

    def test_full_flow_creates_destination_record(self, db_session, service, inventory, tenant_id, users, stores, product, source_inventory):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "10"))

        transfer = service.ship_transfer(transfer.id, tenant_id, users.manager.id)
        assert transfer.status == TransferStatus.IN_TRANSIT
        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("10")

        transfer = service.complete_transfer(transfer.id, tenant_id, users.manager.id)

        assert transfer.status == TransferStatus.COMPLETED
        assert transfer.received_by == users.manager.id
        source = source_record(inventory, tenant_id, stores, product)
        assert source.quantity_on_hand == Decimal("90")
        assert source.quantity_reserved == Decimal("0")
        destination = inventory.get_record(tenant_id, stores.destination.id, product.id)
        assert destination.quantity_on_hand == Decimal("10")
        assert destination.quantity_reserved == Decimal("0")
        assert destination.unit_cost == Decimal("10.00")

        movements = db_session.query(InventoryMovement).filter_by(reference=transfer.transfer_number).all()
        assert sorted(movement.quantity for movement in movements) == [Decimal("-10"), Decimal("10")]
        assert {movement.movement_type for movement in movements} == {MovementType.TRANSFER.value}

    def test_complete_adds_to_existing_destination(self, service, inventory, tenant_id, users, stores, product, source_inventory):
        inventory.create_or_update(tenant_id, stores.destination.id, product.id, quantity_on_hand=4, unit_cost=Decimal("9.00"))
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "6"))
        service.ship_transfer(transfer.id, tenant_id, users.manager.id)

        service.complete_transfer(transfer.id, tenant_id, users.manager.id)

        destination = inventory.get_record(tenant_id, stores.destination.id, product.id)
        assert destination.quantity_on_hand == Decimal("10")
        assert destination.unit_cost == Decimal("9.00")

    def test_cannot_complete_before_shipping(self, service, inventory, tenant_id, users, stores, product, source_inventory):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "10"))

        with pytest.raises(InvalidStateError):
            service.complete_transfer(transfer.id, tenant_id, users.manager.id)

        assert source_record(inventory, tenant_id, stores, product).quantity_on_hand == Decimal("100")

    def test_cannot_ship_twice(self, service, tenant_id, users, stores, product, source_inventory):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "10"))
        service.ship_transfer(transfer.id, tenant_id, users.manager.id)

        with pytest.raises(InvalidStateError) as exc:
            service.ship_transfer(transfer.id, tenant_id, users.manager.id)

        assert exc.value.current_status == "in_transit"

    def test_cannot_ship_pending(self, service, tenant_id, users, stores, product, source_inventory, manager_rule):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))

        with pytest.raises(InvalidStateError):
            service.ship_transfer(transfer.id, tenant_id, users.manager.id)

    def test_other_tenant_cannot_see_transfer(self, service, tenant_id, users, stores, product, source_inventory):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "1"))

        with pytest.raises(NotFoundError):
            service.ship_transfer(transfer.id, uuid4(), users.manager.id)


class TestCancel:

    def test_cancel_approved_releases_exactly_its_quantity(self, service, inventory, tenant_id, users, stores, product, source_inventory):
        inventory.reserve(tenant_id, stores.source.id, product.id, 5)
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "10"))

        transfer = service.cancel_transfer(transfer.id, tenant_id, users.manager.id, notes="Not needed")

        assert transfer.status == TransferStatus.CANCELLED
        assert transfer.cancelled_by == users.manager.id
        assert transfer.notes == "Not needed"
        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("5")

    def test_cancel_pending_cancels_linked_request(self, service, inventory, approvals, tenant_id, users, stores, product, source_inventory, manager_rule):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))

        service.cancel_transfer(transfer.id, tenant_id, users.requester.id)

        assert service.get_transfer_record(tenant_id, transfer.id).status == TransferStatus.CANCELLED
        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("0")
        assert linked_request(approvals, tenant_id, transfer).status == ApprovalStatus.CANCELLED

    def test_cannot_cancel_in_transit(self, service, inventory, tenant_id, users, stores, product, source_inventory):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "10"))
        service.ship_transfer(transfer.id, tenant_id, users.manager.id)

        with pytest.raises(InvalidStateError):
            service.cancel_transfer(transfer.id, tenant_id, users.manager.id)

        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("10")

    def test_cannot_cancel_twice(self, service, inventory, tenant_id, users, stores, product, source_inventory):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "10"))
        service.cancel_transfer(transfer.id, tenant_id, users.manager.id)

        with pytest.raises(InvalidStateError):
            service.cancel_transfer(transfer.id, tenant_id, users.manager.id)

        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("0")


# ===== APPROVAL OUTCOMES =====

class TestApprovalOutcomes:

    def test_approval_reserves_stock(self, service, inventory, approvals, tenant_id, users, stores, product, source_inventory, manager_rule):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))

        transfer = service.submit_decision(transfer.id, tenant_id, users.manager.id, ApprovalDecisionType.APPROVED)

        assert transfer.status == TransferStatus.APPROVED
        assert transfer.approved_by == users.manager.id
        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("60")
        assert linked_request(approvals, tenant_id, transfer).status == ApprovalStatus.APPROVED

    def test_second_approval_does_not_reserve_twice(self, service, inventory, tenant_id, users, stores, product, source_inventory, manager_rule):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))
        service.submit_decision(transfer.id, tenant_id, users.manager.id, ApprovalDecisionType.APPROVED)

        with pytest.raises(InvalidStateError):
            service.approve_transfer(transfer.id, tenant_id, users.second_manager.id)
        with pytest.raises(InvalidStateError):
            service.submit_decision(transfer.id, tenant_id, users.second_manager.id, ApprovalDecisionType.APPROVED)

        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("60")

    def test_rejection_leaves_ledger_untouched(self, service, inventory, approvals, tenant_id, users, stores, product, source_inventory, manager_rule):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))

        transfer = service.submit_decision(
            transfer.id, tenant_id, users.manager.id, ApprovalDecisionType.REJECTED, "Branch is full"
        )

        assert transfer.status == TransferStatus.REJECTED
        assert transfer.notes == "Branch is full"
        assert transfer.rejected_at is not None
        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("0")
        assert linked_request(approvals, tenant_id, transfer).status == ApprovalStatus.REJECTED

    def test_unauthorized_decision_changes_nothing(self, service, inventory, approvals, tenant_id, users, stores, product, source_inventory, manager_rule):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))

        with pytest.raises(UnauthorizedError):
            service.submit_decision(transfer.id, tenant_id, users.finance.id, ApprovalDecisionType.APPROVED)

        assert service.get_transfer_record(tenant_id, transfer.id).status == TransferStatus.PENDING
        assert linked_request(approvals, tenant_id, transfer).approvals == []

    def test_cancelling_request_cancels_transfer(self, service, approvals, tenant_id, users, stores, product, source_inventory, manager_rule):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))
        request = linked_request(approvals, tenant_id, transfer)

        approvals.cancel_approval_request(request.id, tenant_id, users.requester.id, "No longer needed")

        transfer = service.get_transfer_record(tenant_id, transfer.id)
        assert transfer.status == TransferStatus.CANCELLED
        assert transfer.cancelled_by == users.requester.id

    def test_expiry_cancels_transfer(self, service, inventory, approvals, tenant_id, users, stores, product, source_inventory, manager_rule):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))

        assert approvals.expire_overdue_requests(now=utcnow() + timedelta(hours=2)) == 1

        assert linked_request(approvals, tenant_id, transfer).status == ApprovalStatus.EXPIRED
        transfer = service.get_transfer_record(tenant_id, transfer.id)
        assert transfer.status == TransferStatus.CANCELLED
        assert transfer.cancelled_by is None
        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("0")

    def test_handler_failure_keeps_decision(self, service, inventory, approvals, tenant_id, users, stores, product, source_inventory, manager_rule, caplog):
        first = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))
        second = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))
        service.submit_decision(first.id, tenant_id, users.manager.id, ApprovalDecisionType.APPROVED)

        with caplog.at_level(logging.ERROR):
            transfer = service.submit_decision(second.id, tenant_id, users.manager.id, ApprovalDecisionType.APPROVED)

        # The approval stands even though only 40 units were left to reserve
        assert linked_request(approvals, tenant_id, second).status == ApprovalStatus.APPROVED
        assert transfer.status == TransferStatus.PENDING
        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("60")
        assert "Approval outcome handler failed" in caplog.text

        # With no pending request left the transfer can still be cancelled directly
        service.cancel_transfer(second.id, tenant_id, users.manager.id)
        assert service.get_transfer_record(tenant_id, second.id).status == TransferStatus.CANCELLED

    def test_second_request_for_pending_transfer_refused(self, service, approvals, tenant_id, users, stores, product, source_inventory, manager_rule):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))

        with pytest.raises(DuplicateRecordError):
            approvals.create_approval_request(tenant_id, users.manager.id, request_naming(transfer, "1"))

        assert linked_request(approvals, tenant_id, transfer).status == ApprovalStatus.PENDING

    def test_approval_of_other_request_is_ignored(self, service, inventory, approvals, tenant_id, users, stores, product, source_inventory, manager_rule, caplog):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))
        approvals.cancel_approval_request(transfer.approval_request_id, tenant_id, users.manager.id, notify=False)
        other = approvals.create_approval_request(tenant_id, users.manager.id, request_naming(transfer, "600"))

        with caplog.at_level(logging.WARNING):
            other = approvals.process_approval(
                other.id, tenant_id,
                ApprovalDecisionIn(approver_id=users.manager.id, decision=ApprovalDecisionType.APPROVED)
            )

        assert other.status == ApprovalStatus.APPROVED
        assert service.get_transfer_record(tenant_id, transfer.id).status == TransferStatus.PENDING
        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("0")
        assert "ignored" in caplog.text

    def test_cancelling_other_request_leaves_transfer(self, service, approvals, tenant_id, users, stores, product, source_inventory, manager_rule):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))
        approvals.cancel_approval_request(transfer.approval_request_id, tenant_id, users.manager.id, notify=False)
        other = approvals.create_approval_request(tenant_id, users.viewer.id, request_naming(transfer, "600"))

        approvals.cancel_approval_request(other.id, tenant_id, users.viewer.id)

        transfer = service.get_transfer_record(tenant_id, transfer.id)
        assert transfer.status == TransferStatus.PENDING
        assert transfer.cancelled_by is None

    def test_direct_decision_without_request(self, service, inventory, tenant_id, users, stores, product, source_inventory, manager_rule, approvals):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))
        request = linked_request(approvals, tenant_id, transfer)
        approvals.cancel_approval_request(request.id, tenant_id, users.manager.id, notify=False)

        transfer = service.submit_decision(transfer.id, tenant_id, users.manager.id, ApprovalDecisionType.APPROVED)

        assert transfer.status == TransferStatus.APPROVED
        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("60")


# ===== QUERIES =====

class TestQueries:

    def test_get_transfer_includes_request_and_names(self, service, approvals, tenant_id, users, stores, product, source_inventory, manager_rule):
        transfer = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))

        output = service.get_transfer(tenant_id, transfer.id)

        assert output.approval_request_id == linked_request(approvals, tenant_id, transfer).id
        assert output.source_store_name == "Main Store"
        assert output.destination_store_name == "North Branch"
        assert output.product_sku == "ARZ-001"
        assert output.requester_name == "cashier@example.com"

    def test_list_filters(self, service, tenant_id, users, stores, product, source_inventory, manager_rule):
        service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))
        service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "5"))

        pending = service.list_transfers(tenant_id, statuses=[TransferStatus.PENDING])
        everything = service.list_transfers(tenant_id, source_store_id=stores.source.id)
        elsewhere = service.list_transfers(tenant_id, destination_store_id=stores.other.id)

        assert pending.total == 1
        assert pending.transfers[0].quantity == Decimal("60")
        assert everything.total == 2
        assert elsewhere.total == 0

    def test_stats(self, service, tenant_id, users, stores, product, source_inventory, manager_rule):
        service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "60"))
        done = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "5"))
        service.ship_transfer(done.id, tenant_id, users.manager.id)
        service.complete_transfer(done.id, tenant_id, users.manager.id)
        cancelled = service.create_transfer(tenant_id, users.requester.id, transfer_data(stores, product, "2"))
        service.cancel_transfer(cancelled.id, tenant_id, users.manager.id)

        stats = service.get_transfer_stats(tenant_id)

        assert stats.total_transfers == 3
        assert stats.pending_transfers == 1
        assert stats.completed_transfers == 1
        assert stats.cancelled_transfers == 1
        assert stats.total_quantity_transferred == Decimal("5")


# ===== BULK =====

@pytest.fixture
def bulk_service(db_session, service):
    return BulkInventoryTransferService(db_session, transfers=service)


@pytest.fixture
def second_product(db_session, tenant_id, stores):
    """Second product with 20 units at 30.00 in the source store."""
    item = Product(tenant_id=tenant_id, name="Aceite Girasol 1L", sku="ACE-001", price_base=Decimal("30.00"))
    db_session.add(item)
    db_session.flush()
    db_session.add(InventoryRecord(
        tenant_id=tenant_id,
        store_id=stores.source.id,
        product_id=item.id,
        quantity_on_hand=Decimal("20"),
        quantity_reserved=Decimal("0"),
        unit_cost=Decimal("30.00")
    ))
    db_session.commit()
    return item


def bulk_data(stores, items, **extra):
    return BulkTransferCreate(
        source_store_id=stores.source.id,
        destination_store_id=stores.destination.id,
        title="Weekly replenishment",
        items=[BulkTransferItemCreate(product_id=product.id, quantity=Decimal(quantity)) for product, quantity in items],
        **extra
    )


def approved_bulk(bulk_service, tenant_id, users, stores, items):
    bulk = bulk_service.create_bulk_transfer(tenant_id, users.requester.id, bulk_data(stores, items))
    bulk_service.submit_bulk_transfer(bulk.id, tenant_id, users.requester.id)
    return bulk_service.approve_bulk_transfer(bulk.id, tenant_id, users.manager.id)


class TestBulkTransfers:

    def test_create_draft_with_totals(self, bulk_service, inventory, tenant_id, users, stores, product, second_product, source_inventory):
        bulk = bulk_service.create_bulk_transfer(
            tenant_id, users.requester.id, bulk_data(stores, [(product, "10"), (second_product, "5")])
        )

        assert bulk.status == BulkTransferStatus.DRAFT
        assert re.fullmatch(r"BT-\d{8}-0001", bulk.bulk_transfer_number)
        assert bulk.total_items == 2
        assert bulk.total_quantity == Decimal("15")
        assert bulk.total_value == Decimal("250.00")
        assert [item.line_number for item in bulk.items] == [1, 2]
        assert all(item.transfer_id is None for item in bulk.items)
        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("0")

    def test_item_cost_overrides_source_cost(self, bulk_service, tenant_id, users, stores, product, source_inventory):
        data = BulkTransferCreate(
            source_store_id=stores.source.id, destination_store_id=stores.destination.id, title="Priced",
            items=[BulkTransferItemCreate(product_id=product.id, quantity=Decimal("4"), unit_cost=Decimal("12.50"))]
        )

        bulk = bulk_service.create_bulk_transfer(tenant_id, users.requester.id, data)

        assert bulk.items[0].line_total == Decimal("50.00")
        assert bulk.total_value == Decimal("50.00")

    def test_short_item_fails_whole_create(self, db_session, bulk_service, tenant_id, users, stores, product, second_product, source_inventory):
        with pytest.raises(InsufficientInventoryError) as exc:
            bulk_service.create_bulk_transfer(
                tenant_id, users.requester.id, bulk_data(stores, [(product, "10"), (second_product, "21")])
            )

        assert exc.value.details["product_id"] == str(second_product.id)
        assert db_session.query(BulkInventoryTransfer).count() == 0

    def test_payload_checks(self, stores, product):
        with pytest.raises(PydanticValidationError):
            bulk_data(stores, [(product, "1"), (product, "2")])
        with pytest.raises(PydanticValidationError):
            bulk_data(stores, [])
        with pytest.raises(PydanticValidationError):
            BulkTransferCreate(
                source_store_id=stores.source.id, destination_store_id=stores.source.id, title="Same store",
                items=[BulkTransferItemCreate(product_id=product.id, quantity=Decimal("1"))]
            )

    def test_approve_opens_one_transfer_per_item(self, db_session, bulk_service, inventory, approvals, tenant_id, users, stores, product, second_product, source_inventory, manager_rule):
        bulk = approved_bulk(bulk_service, tenant_id, users, stores, [(product, "10"), (second_product, "20")])

        assert bulk.status == BulkTransferStatus.APPROVED
        assert bulk.approved_by == users.manager.id
        small, large = [item.transfer for item in bulk.items]
        assert small.status == TransferStatus.APPROVED
        assert small.requested_by == users.requester.id
        assert small.reference == bulk.bulk_transfer_number
        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("10")
        assert large.status == TransferStatus.PENDING
        request = linked_request(approvals, tenant_id, large)
        assert request.status == ApprovalStatus.PENDING
        assert Decimal(request.approval_data["amount"]) == Decimal("600.00")
        assert inventory.get_record(tenant_id, stores.source.id, second_product.id).quantity_reserved == Decimal("0")
        assert db_session.query(InventoryTransfer).count() == 2

    def test_approve_rolls_back_when_stock_moved(self, db_session, bulk_service, inventory, tenant_id, users, stores, product, second_product, source_inventory):
        bulk = bulk_service.create_bulk_transfer(
            tenant_id, users.requester.id, bulk_data(stores, [(product, "10"), (second_product, "10")])
        )
        bulk_service.submit_bulk_transfer(bulk.id, tenant_id, users.requester.id)
        inventory.reserve(tenant_id, stores.source.id, second_product.id, 15)

        with pytest.raises(InsufficientInventoryError):
            bulk_service.approve_bulk_transfer(bulk.id, tenant_id, users.manager.id)

        assert bulk_service.get_bulk_record(tenant_id, bulk.id).status == BulkTransferStatus.PENDING
        assert db_session.query(InventoryTransfer).count() == 0
        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("0")

    def test_cancel_approved_unwinds_item_transfers(self, bulk_service, inventory, approvals, tenant_id, users, stores, product, second_product, source_inventory, manager_rule):
        bulk = approved_bulk(bulk_service, tenant_id, users, stores, [(product, "10"), (second_product, "20")])
        small, large = [item.transfer for item in bulk.items]

        bulk = bulk_service.cancel_bulk_transfer(bulk.id, tenant_id, users.manager.id, reason="Truck unavailable")

        assert bulk.status == BulkTransferStatus.CANCELLED
        assert bulk.cancelled_by == users.manager.id
        assert "Cancellation reason: Truck unavailable" in bulk.notes
        assert service_status(bulk_service, tenant_id, small) == TransferStatus.CANCELLED
        assert service_status(bulk_service, tenant_id, large) == TransferStatus.CANCELLED
        assert source_record(inventory, tenant_id, stores, product).quantity_reserved == Decimal("0")
        assert linked_request(approvals, tenant_id, large).status == ApprovalStatus.CANCELLED

    def test_cancel_leaves_shipped_items(self, bulk_service, service, tenant_id, users, stores, product, second_product, source_inventory):
        bulk = approved_bulk(bulk_service, tenant_id, users, stores, [(product, "10"), (second_product, "5")])
        shipped, other = [item.transfer for item in bulk.items]
        service.ship_transfer(shipped.id, tenant_id, users.manager.id)

        bulk_service.cancel_bulk_transfer(bulk.id, tenant_id, users.manager.id)

        assert service_status(bulk_service, tenant_id, shipped) == TransferStatus.IN_TRANSIT
        assert service_status(bulk_service, tenant_id, other) == TransferStatus.CANCELLED

    def test_cancel_draft(self, bulk_service, tenant_id, users, stores, product, source_inventory):
        bulk = bulk_service.create_bulk_transfer(tenant_id, users.requester.id, bulk_data(stores, [(product, "1")]))

        bulk = bulk_service.cancel_bulk_transfer(bulk.id, tenant_id, users.requester.id)

        assert bulk.status == BulkTransferStatus.CANCELLED
        assert bulk.notes is None

    def test_invalid_transitions(self, bulk_service, tenant_id, users, stores, product, source_inventory):
        bulk = bulk_service.create_bulk_transfer(tenant_id, users.requester.id, bulk_data(stores, [(product, "1")]))

        with pytest.raises(InvalidStateError):
            bulk_service.approve_bulk_transfer(bulk.id, tenant_id, users.manager.id)

        bulk_service.submit_bulk_transfer(bulk.id, tenant_id, users.requester.id)
        with pytest.raises(InvalidStateError):
            bulk_service.submit_bulk_transfer(bulk.id, tenant_id, users.requester.id)

        bulk_service.cancel_bulk_transfer(bulk.id, tenant_id, users.requester.id)
        with pytest.raises(InvalidStateError) as exc:
            bulk_service.cancel_bulk_transfer(bulk.id, tenant_id, users.requester.id)
        assert exc.value.current_status == "cancelled"

    def test_other_tenant_cannot_see_bulk(self, bulk_service, tenant_id, users, stores, product, source_inventory):
        bulk = bulk_service.create_bulk_transfer(tenant_id, users.requester.id, bulk_data(stores, [(product, "1")]))

        with pytest.raises(NotFoundError):
            bulk_service.get_bulk_transfer(uuid4(), bulk.id)

    def test_get_and_list(self, bulk_service, tenant_id, users, stores, product, second_product, source_inventory):
        approved = approved_bulk(bulk_service, tenant_id, users, stores, [(product, "2")])
        draft = bulk_service.create_bulk_transfer(
            tenant_id, users.requester.id,
            bulk_data(stores, [(second_product, "1")], transfer_type=BulkTransferType.EMERGENCY)
        )

        output = bulk_service.get_bulk_transfer(tenant_id, approved.id)
        assert output.source_store_name == "Main Store"
        assert output.destination_store_name == "North Branch"
        assert output.items[0].product_sku == "ARZ-001"
        assert output.items[0].transfer_number.startswith("TRF-")
        assert output.items[0].transfer_status == TransferStatus.APPROVED

        assert bulk_service.list_bulk_transfers(tenant_id).total == 2
        drafts = bulk_service.list_bulk_transfers(tenant_id, statuses=[BulkTransferStatus.DRAFT])
        assert [item.id for item in drafts.bulk_transfers] == [draft.id]
        emergencies = bulk_service.list_bulk_transfers(tenant_id, transfer_types=[BulkTransferType.EMERGENCY])
        assert emergencies.total == 1
        assert bulk_service.list_bulk_transfers(tenant_id, destination_store_id=stores.other.id).total == 0


def service_status(bulk_service, tenant_id, transfer):
    return bulk_service.transfers.get_transfer_record(tenant_id, transfer.id).status


# ===== HTTP =====

class TestTransferEndpoints:

    def payload(self, stores, product, quantity="10"):
        return {
            "source_store_id": str(stores.source.id),
            "destination_store_id": str(stores.destination.id),
            "product_id": str(product.id),
            "quantity": quantity,
        }

    def test_auto_approved_flow(self, client, auth_headers, users, stores, product, source_inventory):
        response = client.post(
            "/api/v1/inventory-transfers", json=self.payload(stores, product), headers=auth_headers(users.requester)
        )
        assert response.status_code == 201
        created = response.json()["data"]
        assert created["status"] == "approved"
        assert created["approval_request_id"] is None

        response = client.put(f"/api/v1/inventory-transfers/{created['id']}/ship", headers=auth_headers(users.manager))
        assert response.json()["data"]["status"] == "in_transit"

        response = client.put(f"/api/v1/inventory-transfers/{created['id']}/complete", headers=auth_headers(users.manager))
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "completed"

        response = client.get(
            f"/api/v1/inventory/stores/{stores.destination.id}/products/{product.id}",
            headers=auth_headers(users.viewer)
        )
        assert Decimal(response.json()["data"]["quantity_on_hand"]) == Decimal("10")

    def test_approve_through_request(self, client, auth_headers, users, stores, product, source_inventory, manager_rule):
        created = client.post(
            "/api/v1/inventory-transfers", json=self.payload(stores, product, "60"), headers=auth_headers(users.requester)
        ).json()["data"]
        assert created["status"] == "pending"
        assert created["approval_request_id"] is not None

        response = client.put(
            f"/api/v1/inventory-transfers/{created['id']}/approve",
            json={"comments": "Go ahead"},
            headers=auth_headers(users.manager)
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "approved"

    def test_transfer_requests_cannot_be_opened_by_clients(self, client, auth_headers, users, stores, product, source_inventory, manager_rule):
        created = client.post(
            "/api/v1/inventory-transfers", json=self.payload(stores, product, "60"), headers=auth_headers(users.requester)
        ).json()["data"]

        response = client.post(
            "/api/v1/approvals/requests",
            json={
                "object_type": "inventory_transfer",
                "object_id": created["id"],
                "title": "Small transfer",
                "approval_data": {"amount": "1"}
            },
            headers=auth_headers(users.manager)
        )

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"
        detail = client.get(f"/api/v1/inventory-transfers/{created['id']}", headers=auth_headers(users.viewer))
        assert detail.json()["data"]["status"] == "pending"
        assert detail.json()["data"]["approval_request_id"] == created["approval_request_id"]

    def test_reject_requires_decision_role(self, client, auth_headers, users, stores, product, source_inventory, manager_rule):
        created = client.post(
            "/api/v1/inventory-transfers", json=self.payload(stores, product, "60"), headers=auth_headers(users.requester)
        ).json()["data"]

        response = client.put(f"/api/v1/inventory-transfers/{created['id']}/reject", headers=auth_headers(users.requester))

        assert response.status_code == 403

    def test_insufficient_inventory_is_409(self, client, auth_headers, users, stores, product, source_inventory):
        response = client.post(
            "/api/v1/inventory-transfers", json=self.payload(stores, product, "500"), headers=auth_headers(users.requester)
        )

        assert response.status_code == 409
        assert response.json()["error"] == "INSUFFICIENT_INVENTORY"

    def test_same_store_is_400(self, client, auth_headers, users, stores, product, source_inventory):
        payload = self.payload(stores, product)
        payload["destination_store_id"] = payload["source_store_id"]

        response = client.post("/api/v1/inventory-transfers", json=payload, headers=auth_headers(users.requester))

        assert response.status_code == 400

    def test_invalid_transition_is_409(self, client, auth_headers, users, stores, product, source_inventory):
        created = client.post(
            "/api/v1/inventory-transfers", json=self.payload(stores, product), headers=auth_headers(users.requester)
        ).json()["data"]

        response = client.put(f"/api/v1/inventory-transfers/{created['id']}/complete", headers=auth_headers(users.manager))

        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_STATE"

    def test_list_and_stats(self, client, auth_headers, users, stores, product, source_inventory):
        client.post("/api/v1/inventory-transfers", json=self.payload(stores, product), headers=auth_headers(users.requester))

        listed = client.get(
            "/api/v1/inventory-transfers", params={"status": "approved"}, headers=auth_headers(users.viewer)
        )
        stats = client.get("/api/v1/inventory-transfers/stats/summary", headers=auth_headers(users.viewer))

        assert listed.json()["data"]["total"] == 1
        assert stats.json()["data"]["approved_transfers"] == 1


class TestBulkTransferEndpoints:

    def payload(self, stores, *items):
        return {
            "source_store_id": str(stores.source.id),
            "destination_store_id": str(stores.destination.id),
            "title": "Weekend restock",
            "items": [{"product_id": str(product.id), "quantity": quantity} for product, quantity in items],
        }

    def test_full_flow(self, client, auth_headers, users, stores, product, second_product, source_inventory):
        response = client.post(
            "/api/v1/inventory-transfers/bulk",
            json=self.payload(stores, (product, "10"), (second_product, "2")),
            headers=auth_headers(users.requester)
        )
        assert response.status_code == 201
        created = response.json()["data"]
        assert created["status"] == "draft"
        assert created["total_items"] == 2

        response = client.put(f"/api/v1/inventory-transfers/bulk/{created['id']}/submit", headers=auth_headers(users.requester))
        assert response.json()["data"]["status"] == "pending"

        response = client.put(
            f"/api/v1/inventory-transfers/bulk/{created['id']}/approve",
            json={"notes": "Ship Friday"},
            headers=auth_headers(users.manager)
        )
        assert response.status_code == 200
        approved = response.json()["data"]
        assert approved["status"] == "approved"
        assert all(item["transfer_status"] == "approved" for item in approved["items"])

        transfers = client.get(
            "/api/v1/inventory-transfers", params={"status": "approved"}, headers=auth_headers(users.viewer)
        )
        assert transfers.json()["data"]["total"] == 2

    def test_list_is_not_read_as_transfer_id(self, client, auth_headers, users, stores, product, source_inventory):
        client.post(
            "/api/v1/inventory-transfers/bulk", json=self.payload(stores, (product, "1")), headers=auth_headers(users.requester)
        )

        response = client.get("/api/v1/inventory-transfers/bulk", headers=auth_headers(users.viewer))

        assert response.status_code == 200
        assert response.json()["data"]["total"] == 1

    def test_approve_requires_decision_role(self, client, auth_headers, users, stores, product, source_inventory):
        created = client.post(
            "/api/v1/inventory-transfers/bulk", json=self.payload(stores, (product, "1")), headers=auth_headers(users.requester)
        ).json()["data"]
        client.put(f"/api/v1/inventory-transfers/bulk/{created['id']}/submit", headers=auth_headers(users.requester))

        response = client.put(f"/api/v1/inventory-transfers/bulk/{created['id']}/approve", headers=auth_headers(users.requester))

        assert response.status_code == 403

    def test_short_item_is_409(self, client, auth_headers, users, stores, product, source_inventory):
        response = client.post(
            "/api/v1/inventory-transfers/bulk", json=self.payload(stores, (product, "101")), headers=auth_headers(users.requester)
        )

        assert response.status_code == 409
        assert response.json()["error"] == "INSUFFICIENT_INVENTORY"

    def test_duplicate_products_are_400(self, client, auth_headers, users, stores, product, source_inventory):
        response = client.post(
            "/api/v1/inventory-transfers/bulk",
            json=self.payload(stores, (product, "1"), (product, "2")),
            headers=auth_headers(users.requester)
        )

        assert response.status_code == 400

    def test_cancel_with_reason(self, client, auth_headers, users, stores, product, source_inventory):
        created = client.post(
            "/api/v1/inventory-transfers/bulk", json=self.payload(stores, (product, "1")), headers=auth_headers(users.requester)
        ).json()["data"]

        response = client.put(
            f"/api/v1/inventory-transfers/bulk/{created['id']}/cancel",
            json={"notes": "Duplicated order"},
            headers=auth_headers(users.requester)
        )

        assert response.json()["data"]["status"] == "cancelled"
        assert response.json()["data"]["notes"] == "Cancellation reason: Duplicated order"

        response = client.put(f"/api/v1/inventory-transfers/bulk/{created['id']}/submit", headers=auth_headers(users.requester))
        assert response.status_code == 409
