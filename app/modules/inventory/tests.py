"""
Tests for the inventory ledger

Covers:
- reserve / release / adjust / commit against the available >= 0 invariant
- create_or_update upserts and duplicate detection
- stock takes and movement history
- two sessions racing for the same stock
- HTTP endpoints and tenant scoping
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from app.core.exceptions import (
    DuplicateRecordError, InsufficientAvailableError, InsufficientQuantityError,
    InventoryRecordNotFoundError, NotFoundError, OverReleaseError, ValidationError
)
from app.modules.inventory.models import InventoryMovement, InventoryRecord
from app.modules.inventory.schemas import MovementType
from app.modules.inventory.service import InventoryService


def assert_ledger_invariant(record: InventoryRecord):
    assert record.quantity_reserved >= 0
    assert record.quantity_available == record.quantity_on_hand - record.quantity_reserved
    assert record.quantity_available >= 0


# ===== RESERVATIONS =====

class TestReservations:

    def test_reserve_moves_only_reserved(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)

        record = service.reserve(tenant_id, stores.source.id, product.id, 30)

        assert record.quantity_reserved == Decimal("30")
        assert record.quantity_on_hand == Decimal("100")
        assert record.quantity_available == Decimal("70")
        assert_ledger_invariant(record)

    def test_reserve_more_than_available_fails(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)
        service.reserve(tenant_id, stores.source.id, product.id, 80)

        with pytest.raises(InsufficientAvailableError) as exc:
            service.reserve(tenant_id, stores.source.id, product.id, 21)

        assert exc.value.available == Decimal("20")
        record = service.get_record(tenant_id, stores.source.id, product.id)
        assert record.quantity_reserved == Decimal("80")

    def test_reserve_missing_record(self, db_session, tenant_id, stores, product):
        service = InventoryService(db_session)

        with pytest.raises(InventoryRecordNotFoundError):
            service.reserve(tenant_id, stores.destination.id, product.id, 1)

    def test_reserve_rejects_non_positive_quantity(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)

        with pytest.raises(ValidationError):
            service.reserve(tenant_id, stores.source.id, product.id, 0)

    def test_release_returns_stock(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)
        service.reserve(tenant_id, stores.source.id, product.id, 10)

        record = service.release(tenant_id, stores.source.id, product.id, 4)

        assert record.quantity_reserved == Decimal("6")
        assert record.quantity_available == Decimal("94")

    def test_over_release_fails(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)
        service.reserve(tenant_id, stores.source.id, product.id, 5)

        with pytest.raises(OverReleaseError):
            service.release(tenant_id, stores.source.id, product.id, 6)

        record = service.get_record(tenant_id, stores.source.id, product.id)
        assert record.quantity_reserved == Decimal("5")

    def test_fractional_quantities(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)

        record = service.reserve(tenant_id, stores.source.id, product.id, Decimal("2.5"))

        assert record.quantity_reserved == Decimal("2.500")

    def test_other_tenant_cannot_reserve(self, db_session, stores, product, source_inventory):
        service = InventoryService(db_session)

        with pytest.raises(InventoryRecordNotFoundError):
            service.reserve(uuid4(), stores.source.id, product.id, 1)


class TestConcurrentReservations:

    def test_two_sessions_racing_for_stock(self, db_session, session_factory, tenant_id, stores, product):
        """available = 5, two callers ask for 3 each: exactly one wins."""
        store_id, product_id = stores.source.id, product.id
        db_session.add(InventoryRecord(
            tenant_id=tenant_id, store_id=store_id, product_id=product_id,
            quantity_on_hand=Decimal("5"), quantity_reserved=Decimal("0"), unit_cost=Decimal("1.00")
        ))
        db_session.commit()
        db_session.close()

        first = session_factory(expire_on_commit=False)
        second = session_factory(expire_on_commit=False)
        try:
            # Both callers read the same snapshot before either writes
            seen_by_first = InventoryService(first).get_record(tenant_id, store_id, product_id)
            first.commit()
            seen_by_second = InventoryService(second).get_record(tenant_id, store_id, product_id)
            second.commit()
            assert seen_by_first.quantity_available == seen_by_second.quantity_available == Decimal("5")

            outcomes = []
            for session in (first, second):
                try:
                    InventoryService(session).reserve(tenant_id, store_id, product_id, 3)
                    outcomes.append("reserved")
                except InsufficientAvailableError:
                    outcomes.append("insufficient")

            assert sorted(outcomes) == ["insufficient", "reserved"]
            final = InventoryService(first).get_record(tenant_id, store_id, product_id)
            assert final.quantity_reserved == Decimal("3")
            assert_ledger_invariant(final)
        finally:
            first.close()
            second.close()


# ===== ON-HAND CHANGES =====

class TestAdjust:

    def test_positive_adjust_writes_movement(self, db_session, tenant_id, stores, product, source_inventory, users):
        service = InventoryService(db_session)

        record = service.adjust(
            tenant_id, stores.source.id, product.id, 25, "purchase",
            reference="PO-1", user_id=users.admin.id
        )

        assert record.quantity_on_hand == Decimal("125")
        movement = db_session.query(InventoryMovement).filter_by(reference="PO-1").one()
        assert movement.movement_type == MovementType.IN.value
        assert movement.quantity == Decimal("25")

    def test_negative_adjust(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)

        record = service.adjust(tenant_id, stores.source.id, product.id, -40, "damage")

        assert record.quantity_on_hand == Decimal("60")
        movement = db_session.query(InventoryMovement).filter_by(reason="damage").one()
        assert movement.movement_type == MovementType.OUT.value

    def test_adjust_below_zero_fails(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)

        with pytest.raises(InsufficientQuantityError):
            service.adjust(tenant_id, stores.source.id, product.id, -101, "damage")

        assert service.get_record(tenant_id, stores.source.id, product.id).quantity_on_hand == Decimal("100")
        assert db_session.query(InventoryMovement).count() == 0

    def test_adjust_below_reserved_fails(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)
        service.reserve(tenant_id, stores.source.id, product.id, 90)

        with pytest.raises(InsufficientQuantityError):
            service.adjust(tenant_id, stores.source.id, product.id, -11, "damage")

        record = service.get_record(tenant_id, stores.source.id, product.id)
        assert_ledger_invariant(record)

    def test_adjust_missing_record(self, db_session, tenant_id, stores, product):
        service = InventoryService(db_session)

        with pytest.raises(InventoryRecordNotFoundError):
            service.adjust(tenant_id, stores.source.id, product.id, 5, "purchase")

    def test_zero_adjust_rejected(self, db_session, tenant_id, stores, product, source_inventory):
        with pytest.raises(ValidationError):
            InventoryService(db_session).adjust(tenant_id, stores.source.id, product.id, 0, "noop")


class TestCommit:

    def test_commit_consumes_reservation(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)
        service.reserve(tenant_id, stores.source.id, product.id, 10)

        record = service.commit(tenant_id, stores.source.id, product.id, 10, "sale", reference="INV-9")

        assert record.quantity_on_hand == Decimal("90")
        assert record.quantity_reserved == Decimal("0")
        movement = db_session.query(InventoryMovement).filter_by(reference="INV-9").one()
        assert movement.quantity == Decimal("-10")

    def test_commit_more_than_reserved_fails(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)
        service.reserve(tenant_id, stores.source.id, product.id, 2)

        with pytest.raises(OverReleaseError):
            service.commit(tenant_id, stores.source.id, product.id, 3, "sale")


# ===== UPSERT & STOCK TAKE =====

class TestCreateOrUpdate:

    def test_creates_record(self, db_session, tenant_id, stores, product):
        service = InventoryService(db_session)

        record = service.create_or_update(
            tenant_id, stores.destination.id, product.id,
            quantity_on_hand=12, unit_cost=Decimal("4.50"), reorder_point=5
        )

        assert record.quantity_on_hand == Decimal("12")
        assert record.quantity_reserved == Decimal("0")
        assert record.unit_cost == Decimal("4.50")
        assert db_session.query(InventoryMovement).filter_by(reason="initial_stock").count() == 1

    def test_updates_existing_record(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)

        record = service.create_or_update(tenant_id, stores.source.id, product.id, quantity_on_hand=80, unit_cost=11)

        assert record.quantity_on_hand == Decimal("80")
        assert record.unit_cost == Decimal("11.00")
        assert db_session.query(InventoryRecord).count() == 1

    def test_expect_new_on_existing_fails(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)

        with pytest.raises(DuplicateRecordError):
            service.create_or_update(tenant_id, stores.source.id, product.id, quantity_on_hand=1, expect_new=True)

    def test_update_cannot_drop_below_reserved(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)
        service.reserve(tenant_id, stores.source.id, product.id, 50)

        with pytest.raises(InsufficientQuantityError):
            service.create_or_update(tenant_id, stores.source.id, product.id, quantity_on_hand=49)

    def test_unknown_store_or_product(self, db_session, tenant_id, stores, product):
        service = InventoryService(db_session)

        with pytest.raises(NotFoundError):
            service.create_or_update(tenant_id, uuid4(), product.id, quantity_on_hand=1)
        with pytest.raises(NotFoundError):
            service.create_or_update(tenant_id, stores.source.id, uuid4(), quantity_on_hand=1)


class TestStockTake:

    def test_stock_take_records_difference(self, db_session, tenant_id, stores, product, source_inventory, users):
        service = InventoryService(db_session)

        record = service.stock_take(tenant_id, stores.source.id, product.id, 97, notes="Monthly count", user_id=users.manager.id)

        assert record.quantity_on_hand == Decimal("97")
        assert record.last_stock_take_quantity == Decimal("97")
        assert record.last_stock_take_at is not None
        movement = db_session.query(InventoryMovement).filter_by(reason="stock_take").one()
        assert movement.quantity == Decimal("-3")
        assert movement.movement_type == MovementType.ADJ.value

    def test_stock_take_below_reserved_fails(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)
        service.reserve(tenant_id, stores.source.id, product.id, 20)

        with pytest.raises(InsufficientQuantityError):
            service.stock_take(tenant_id, stores.source.id, product.id, 19)


class TestMovements:

    def test_list_movements_filters(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)
        service.adjust(tenant_id, stores.source.id, product.id, 5, "purchase")
        service.adjust(tenant_id, stores.source.id, product.id, -2, "damage")

        everything = service.list_movements(tenant_id)
        outgoing = service.list_movements(tenant_id, movement_type=MovementType.OUT)

        assert everything.total == 2
        assert outgoing.total == 1
        assert outgoing.movements[0].quantity == Decimal("-2")
        assert outgoing.movements[0].store_name == "Main Store"

    def test_movements_are_tenant_scoped(self, db_session, tenant_id, stores, product, source_inventory):
        service = InventoryService(db_session)
        service.adjust(tenant_id, stores.source.id, product.id, 5, "purchase")

        assert service.list_movements(uuid4()).total == 0


# ===== HTTP =====

class TestInventoryEndpoints:

    def test_get_store_inventory(self, client, auth_headers, users, stores, source_inventory):
        response = client.get(
            f"/api/v1/inventory/stores/{stores.source.id}",
            headers=auth_headers(users.viewer)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert len(body["data"]) == 1
        assert Decimal(body["data"][0]["quantity_available"]) == Decimal("100")
        assert body["data"][0]["product_sku"] == "ARZ-001"

    def test_adjust_endpoint(self, client, auth_headers, users, stores, product, source_inventory):
        response = client.post(
            f"/api/v1/inventory/stores/{stores.source.id}/products/{product.id}/adjust",
            json={"quantity": "-5", "reason": "damage"},
            headers=auth_headers(users.manager)
        )

        assert response.status_code == 200
        assert Decimal(response.json()["data"]["quantity_on_hand"]) == Decimal("95")

    def test_adjust_endpoint_conflict(self, client, auth_headers, users, stores, product, source_inventory):
        response = client.post(
            f"/api/v1/inventory/stores/{stores.source.id}/products/{product.id}/adjust",
            json={"quantity": "-500", "reason": "damage"},
            headers=auth_headers(users.manager)
        )

        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "INSUFFICIENT_QUANTITY"

    def test_adjust_requires_manager_role(self, client, auth_headers, users, stores, product, source_inventory):
        response = client.post(
            f"/api/v1/inventory/stores/{stores.source.id}/products/{product.id}/adjust",
            json={"quantity": "1", "reason": "purchase"},
            headers=auth_headers(users.viewer)
        )

        assert response.status_code == 403

    def test_upsert_creates_destination_record(self, client, auth_headers, users, stores, product):
        response = client.put(
            f"/api/v1/inventory/stores/{stores.destination.id}/products/{product.id}",
            json={"quantity_on_hand": "7", "unit_cost": "3.25"},
            headers=auth_headers(users.admin)
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert Decimal(data["quantity_on_hand"]) == Decimal("7")
        assert data["store_name"] == "North Branch"

    def test_stock_take_endpoint(self, client, auth_headers, users, stores, product, source_inventory):
        response = client.post(
            f"/api/v1/inventory/stores/{stores.source.id}/products/{product.id}/stock-take",
            json={"actual_quantity": "101"},
            headers=auth_headers(users.manager)
        )

        assert response.status_code == 200
        assert Decimal(response.json()["data"]["last_stock_take_quantity"]) == Decimal("101")

    def test_missing_record_is_404(self, client, auth_headers, users, stores, product):
        response = client.get(
            f"/api/v1/inventory/stores/{stores.destination.id}/products/{product.id}",
            headers=auth_headers(users.viewer)
        )

        assert response.status_code == 404
        assert response.json()["error"] == "INVENTORY_RECORD_NOT_FOUND"

    def test_non_member_tenant_is_forbidden(self, client, users, stores, source_inventory):
        from app.modules.auth.utils import create_access_token

        response = client.get(
            f"/api/v1/inventory/stores/{stores.source.id}",
            headers={
                "Authorization": f"Bearer {create_access_token({'sub': str(users.viewer.id)})}",
                "X-Tenant-ID": str(uuid4()),
            }
        )

        assert response.status_code == 403

    def test_missing_tenant_header(self, client, users, stores):
        response = client.get(f"/api/v1/inventory/stores/{stores.source.id}")

        assert response.status_code == 400
        assert response.json()["error"] == "TENANT_CONTEXT"

    def test_movements_endpoint(self, client, auth_headers, users, stores, product, source_inventory):
        client.post(
            f"/api/v1/inventory/stores/{stores.source.id}/products/{product.id}/adjust",
            json={"quantity": "3", "reason": "purchase"},
            headers=auth_headers(users.manager)
        )

        response = client.get(
            "/api/v1/inventory/movements",
            params={"store_id": str(stores.source.id)},
            headers=auth_headers(users.viewer)
        )

        assert response.status_code == 200
        assert response.json()["data"]["total"] == 1
