"""
Inventory ledger: per (tenant, store, product) on-hand and reserved quantities.

Responsibilities:
- reserve / release move only quantity_reserved
- adjust / commit / stock_take change quantity_on_hand and write a movement
- create_or_update upserts the ledger row for a store and product

Every mutation of the quantities is a single conditional UPDATE so two callers
racing for the same stock cannot both succeed; the WHERE clause carries the
invariant (available >= 0, reserved >= 0) and a zero rowcount is turned into
the matching ledger error.
"""
import logging
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import and_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.common.mixins import utcnow
from app.core.config import settings
from app.core.exceptions import (
    DuplicateRecordError, InsufficientAvailableError, InsufficientQuantityError,
    InventoryRecordNotFoundError, NotFoundError, OverReleaseError, ValidationError
)
from app.database.database import transaction
from app.modules.inventory.models import InventoryRecord, InventoryMovement
from app.modules.inventory.schemas import (
    InventoryRecordOut, InventoryMovementOut, InventoryMovementList, MovementType
)
from app.modules.products.models import Product
from app.modules.stores.models import Store

logger = logging.getLogger(__name__)

QUANTITY_PLACES = Decimal("0.001")


def to_quantity(value) -> Decimal:
    """Normalize a quantity to a Decimal with three fraction digits."""
    try:
        return Decimal(str(value)).quantize(QUANTITY_PLACES)
    except ArithmeticError:
        raise ValidationError(f"Invalid quantity: {value}")


def _positive_quantity(value) -> Decimal:
    quantity = to_quantity(value)
    if quantity <= 0:
        raise ValidationError("Quantity must be greater than zero", {"quantity": str(quantity)})
    return quantity


class InventoryService:
    """Service for inventory ledger operations."""

    def __init__(self, db: Session):
        self.db = db

    # ---- lookups ---------------------------------------------------------

    def _record_filter(self, tenant_id: UUID, store_id: UUID, product_id: UUID):
        return and_(
            InventoryRecord.tenant_id == tenant_id,
            InventoryRecord.store_id == store_id,
            InventoryRecord.product_id == product_id
        )

    def find_record(
        self,
        tenant_id: UUID,
        store_id: UUID,
        product_id: UUID,
        for_update: bool = False
    ) -> Optional[InventoryRecord]:
        query = self.db.query(InventoryRecord).populate_existing().filter(
            self._record_filter(tenant_id, store_id, product_id)
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_record(
        self,
        tenant_id: UUID,
        store_id: UUID,
        product_id: UUID,
        for_update: bool = False
    ) -> InventoryRecord:
        record = self.find_record(tenant_id, store_id, product_id, for_update)
        if not record:
            raise InventoryRecordNotFoundError(store_id, product_id)
        return record

    def get_store(self, tenant_id: UUID, store_id: UUID) -> Store:
        store = self.db.query(Store).filter(
            Store.tenant_id == tenant_id,
            Store.id == store_id,
            Store.deleted_at.is_(None)
        ).first()
        if not store:
            raise NotFoundError("Store", store_id)
        return store

    def get_product(self, tenant_id: UUID, product_id: UUID) -> Product:
        product = self.db.query(Product).filter(
            Product.tenant_id == tenant_id,
            Product.id == product_id,
            Product.deleted_at.is_(None)
        ).first()
        if not product:
            raise NotFoundError("Product", product_id)
        return product

    def get_inventory(self, tenant_id: UUID, store_id: UUID, product_id: UUID) -> InventoryRecordOut:
        self.get_store(tenant_id, store_id)
        return self.record_to_output(self.get_record(tenant_id, store_id, product_id))

    def list_store_inventory(
        self,
        tenant_id: UUID,
        store_id: UUID,
        low_stock_only: bool = False
    ) -> List[InventoryRecordOut]:
        """All ledger rows of a store; low_stock_only keeps rows at or below their reorder point."""
        self.get_store(tenant_id, store_id)
        query = self.db.query(InventoryRecord).options(
            selectinload(InventoryRecord.product),
            selectinload(InventoryRecord.store)
        ).filter(
            InventoryRecord.tenant_id == tenant_id,
            InventoryRecord.store_id == store_id
        )
        if low_stock_only:
            query = query.filter(
                InventoryRecord.reorder_point.isnot(None),
                InventoryRecord.quantity_on_hand <= InventoryRecord.reorder_point
            )
        records = query.order_by(InventoryRecord.created_at.asc()).all()
        return [self.record_to_output(record) for record in records]

    # ---- reservations ----------------------------------------------------

    def reserve(self, tenant_id: UUID, store_id: UUID, product_id: UUID, quantity) -> InventoryRecord:
        """Earmark available stock. Fails with InsufficientAvailableError if available < quantity."""
        quantity = _positive_quantity(quantity)
        with transaction(self.db):
            self.db.flush()
            result = self.db.execute(
                update(InventoryRecord)
                .where(
                    self._record_filter(tenant_id, store_id, product_id),
                    InventoryRecord.quantity_on_hand - InventoryRecord.quantity_reserved >= quantity
                )
                .values(
                    quantity_reserved=InventoryRecord.quantity_reserved + quantity,
                    updated_at=utcnow()
                )
                .execution_options(synchronize_session=False)
            )
            record = self.get_record(tenant_id, store_id, product_id)
            if result.rowcount == 0:
                raise InsufficientAvailableError(record.quantity_available, quantity)

        logger.info(f"Reserved {quantity} of product {product_id} at store {store_id}")
        return record

    def release(self, tenant_id: UUID, store_id: UUID, product_id: UUID, quantity) -> InventoryRecord:
        """Return reserved stock to available. Fails with OverReleaseError if quantity > reserved."""
        quantity = _positive_quantity(quantity)
        with transaction(self.db):
            self.db.flush()
            result = self.db.execute(
                update(InventoryRecord)
                .where(
                    self._record_filter(tenant_id, store_id, product_id),
                    InventoryRecord.quantity_reserved >= quantity
                )
                .values(
                    quantity_reserved=InventoryRecord.quantity_reserved - quantity,
                    updated_at=utcnow()
                )
                .execution_options(synchronize_session=False)
            )
            record = self.get_record(tenant_id, store_id, product_id)
            if result.rowcount == 0:
                raise OverReleaseError(record.quantity_reserved, quantity)

        logger.info(f"Released {quantity} of product {product_id} at store {store_id}")
        return record

    # ---- on-hand changes -------------------------------------------------

    def adjust(
        self,
        tenant_id: UUID,
        store_id: UUID,
        product_id: UUID,
        quantity,
        reason: str,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        user_id: Optional[UUID] = None,
        movement_type: Optional[MovementType] = None
    ) -> InventoryRecord:
        """
        Apply a signed delta to quantity_on_hand.

        Positive is stock-in, negative is stock-out. On-hand may never drop
        below zero or below the reserved quantity.
        """
        delta = to_quantity(quantity)
        if delta == 0:
            raise ValidationError("Adjustment quantity cannot be zero")

        with transaction(self.db):
            self.db.flush()
            result = self.db.execute(
                update(InventoryRecord)
                .where(
                    self._record_filter(tenant_id, store_id, product_id),
                    InventoryRecord.quantity_on_hand + delta >= InventoryRecord.quantity_reserved
                )
                .values(
                    quantity_on_hand=InventoryRecord.quantity_on_hand + delta,
                    updated_at=utcnow()
                )
                .execution_options(synchronize_session=False)
            )
            record = self.get_record(tenant_id, store_id, product_id)
            if result.rowcount == 0:
                raise InsufficientQuantityError(record.quantity_on_hand, record.quantity_reserved, delta)

            if movement_type is None:
                movement_type = MovementType.IN if delta > 0 else MovementType.OUT
            self._add_movement(
                tenant_id, store_id, product_id, delta, movement_type,
                reason=reason, reference=reference, notes=notes, user_id=user_id
            )

        logger.info(f"Inventory adjusted by {delta} for product {product_id} at store {store_id} ({reason})")
        return record

    def commit(
        self,
        tenant_id: UUID,
        store_id: UUID,
        product_id: UUID,
        quantity,
        reason: str,
        reference: Optional[str] = None,
        user_id: Optional[UUID] = None,
        movement_type: MovementType = MovementType.OUT
    ) -> InventoryRecord:
        """Consume a reservation: reserved and on-hand both drop by quantity."""
        quantity = _positive_quantity(quantity)
        with transaction(self.db):
            self.db.flush()
            result = self.db.execute(
                update(InventoryRecord)
                .where(
                    self._record_filter(tenant_id, store_id, product_id),
                    InventoryRecord.quantity_reserved >= quantity,
                    InventoryRecord.quantity_on_hand >= quantity
                )
                .values(
                    quantity_reserved=InventoryRecord.quantity_reserved - quantity,
                    quantity_on_hand=InventoryRecord.quantity_on_hand - quantity,
                    updated_at=utcnow()
                )
                .execution_options(synchronize_session=False)
            )
            record = self.get_record(tenant_id, store_id, product_id)
            if result.rowcount == 0:
                raise OverReleaseError(record.quantity_reserved, quantity)

            self._add_movement(
                tenant_id, store_id, product_id, -quantity, movement_type,
                reason=reason, reference=reference, user_id=user_id
            )

        logger.info(f"Committed {quantity} of product {product_id} at store {store_id} ({reason})")
        return record

    def create_or_update(
        self,
        tenant_id: UUID,
        store_id: UUID,
        product_id: UUID,
        quantity_on_hand=None,
        unit_cost=None,
        reorder_point=None,
        expect_new: bool = False,
        user_id: Optional[UUID] = None
    ) -> InventoryRecord:
        """
        Upsert the ledger row keyed by (tenant, store, product).

        Raises DuplicateRecordError when expect_new is set and the row exists.
        """
        self.get_store(tenant_id, store_id)
        self.get_product(tenant_id, product_id)

        with transaction(self.db):
            record = self.find_record(tenant_id, store_id, product_id, for_update=True)
            if record and expect_new:
                raise DuplicateRecordError(
                    "Inventory record already exists for this product and store",
                    {"store_id": str(store_id), "product_id": str(product_id)}
                )

            if record is None:
                on_hand = to_quantity(quantity_on_hand or 0)
                if on_hand < 0:
                    raise ValidationError("Quantity on hand cannot be negative")
                record = InventoryRecord(
                    tenant_id=tenant_id,
                    store_id=store_id,
                    product_id=product_id,
                    quantity_on_hand=on_hand,
                    quantity_reserved=Decimal("0"),
                    unit_cost=Decimal(str(unit_cost)) if unit_cost is not None else Decimal("0"),
                    reorder_point=to_quantity(reorder_point) if reorder_point is not None else None
                )
                try:
                    with self.db.begin_nested():
                        self.db.add(record)
                except IntegrityError:
                    raise DuplicateRecordError(
                        "Inventory record already exists for this product and store",
                        {"store_id": str(store_id), "product_id": str(product_id)}
                    )
                if on_hand > 0:
                    self._add_movement(
                        tenant_id, store_id, product_id, on_hand, MovementType.IN,
                        reason="initial_stock", user_id=user_id
                    )
                logger.info(f"Inventory record created for product {product_id} at store {store_id}")
            else:
                if quantity_on_hand is not None:
                    new_on_hand = to_quantity(quantity_on_hand)
                    delta = new_on_hand - record.quantity_on_hand
                    if new_on_hand < record.quantity_reserved:
                        raise InsufficientQuantityError(record.quantity_on_hand, record.quantity_reserved, delta)
                    if delta != 0:
                        record.quantity_on_hand = new_on_hand
                        self._add_movement(
                            tenant_id, store_id, product_id, delta, MovementType.ADJ,
                            reason="manual_update", user_id=user_id
                        )
                if unit_cost is not None:
                    record.unit_cost = Decimal(str(unit_cost))
                if reorder_point is not None:
                    record.reorder_point = to_quantity(reorder_point)
                self.db.flush()
                logger.info(f"Inventory record updated for product {product_id} at store {store_id}")

        self.db.refresh(record)
        return record

    def stock_take(
        self,
        tenant_id: UUID,
        store_id: UUID,
        product_id: UUID,
        actual_quantity,
        notes: Optional[str] = None,
        user_id: Optional[UUID] = None
    ) -> InventoryRecord:
        """Set on-hand to a physically counted quantity and record the difference."""
        actual = to_quantity(actual_quantity)
        if actual < 0:
            raise ValidationError("Counted quantity cannot be negative")

        with transaction(self.db):
            record = self.get_record(tenant_id, store_id, product_id, for_update=True)
            delta = actual - record.quantity_on_hand
            if actual < record.quantity_reserved:
                raise InsufficientQuantityError(record.quantity_on_hand, record.quantity_reserved, delta)

            record.quantity_on_hand = actual
            record.last_stock_take_at = utcnow()
            record.last_stock_take_quantity = actual
            if delta != 0:
                self._add_movement(
                    tenant_id, store_id, product_id, delta, MovementType.ADJ,
                    reason="stock_take", notes=notes, user_id=user_id
                )
            self.db.flush()

        logger.info(f"Stock take for product {product_id} at store {store_id}: counted {actual}, difference {delta}")
        self.db.refresh(record)
        return record

    # ---- movements -------------------------------------------------------

    def _add_movement(
        self,
        tenant_id: UUID,
        store_id: UUID,
        product_id: UUID,
        quantity: Decimal,
        movement_type: MovementType,
        reason: Optional[str] = None,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        user_id: Optional[UUID] = None
    ) -> InventoryMovement:
        movement = InventoryMovement(
            tenant_id=tenant_id,
            store_id=store_id,
            product_id=product_id,
            quantity=quantity,
            movement_type=MovementType(movement_type).value,
            reason=reason,
            reference=reference,
            notes=notes,
            created_by=user_id
        )
        self.db.add(movement)
        self.db.flush()
        return movement

    def list_movements(
        self,
        tenant_id: UUID,
        store_id: Optional[UUID] = None,
        product_id: Optional[UUID] = None,
        movement_type: Optional[MovementType] = None,
        limit: int = settings.DEFAULT_PAGE_SIZE,
        offset: int = 0
    ) -> InventoryMovementList:
        query = self.db.query(InventoryMovement).options(
            selectinload(InventoryMovement.product),
            selectinload(InventoryMovement.store)
        ).filter(InventoryMovement.tenant_id == tenant_id)

        if store_id:
            query = query.filter(InventoryMovement.store_id == store_id)
        if product_id:
            query = query.filter(InventoryMovement.product_id == product_id)
        if movement_type:
            query = query.filter(InventoryMovement.movement_type == MovementType(movement_type).value)

        total = query.count()
        movements = query.order_by(
            InventoryMovement.created_at.desc()
        ).offset(offset).limit(limit).all()

        return InventoryMovementList(
            movements=[
                InventoryMovementOut(
                    id=movement.id,
                    tenant_id=movement.tenant_id,
                    store_id=movement.store_id,
                    product_id=movement.product_id,
                    quantity=movement.quantity,
                    movement_type=movement.movement_type,
                    reason=movement.reason,
                    reference=movement.reference,
                    notes=movement.notes,
                    created_by=movement.created_by,
                    created_at=movement.created_at,
                    product_name=movement.product.name if movement.product else None,
                    store_name=movement.store.name if movement.store else None
                )
                for movement in movements
            ],
            total=total,
            limit=limit,
            offset=offset
        )

    def record_to_output(self, record: InventoryRecord) -> InventoryRecordOut:
        return InventoryRecordOut(
            id=record.id,
            tenant_id=record.tenant_id,
            store_id=record.store_id,
            product_id=record.product_id,
            quantity_on_hand=record.quantity_on_hand,
            quantity_reserved=record.quantity_reserved,
            quantity_available=record.quantity_available,
            unit_cost=record.unit_cost,
            reorder_point=record.reorder_point,
            last_stock_take_at=record.last_stock_take_at,
            last_stock_take_quantity=record.last_stock_take_quantity,
            created_at=record.created_at,
            updated_at=record.updated_at,
            product_name=record.product.name if record.product else None,
            product_sku=record.product.sku if record.product else None,
            store_name=record.store.name if record.store else None
        )
