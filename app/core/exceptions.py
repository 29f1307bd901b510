"""
Typed exceptions raised by the service layer.

Services never raise HTTPException directly; they raise one of the classes
below and the HTTP layer (app.common.errors) translates it into the standard
response envelope using `status_code` and `code`.

    POSError
    +-- NotFoundError
    |   +-- InventoryRecordNotFoundError
    +-- InvalidStateError
    +-- LedgerError
    |   +-- InsufficientAvailableError
    |   |   +-- InsufficientInventoryError
    |   +-- InsufficientQuantityError
    |   +-- OverReleaseError
    +-- UnauthorizedError
    +-- DuplicateRecordError
    +-- ValidationError
    +-- ApprovalHandlerNotImplementedError
"""
from typing import Any, Dict, Optional
from uuid import UUID


class POSError(Exception):
    """Base exception for all domain errors."""

    code: str = "POS_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFoundError(POSError):
    """Entity absent or outside the caller's tenant/store scope."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class InventoryRecordNotFoundError(NotFoundError):
    code = "INVENTORY_RECORD_NOT_FOUND"

    def __init__(self, store_id: UUID, product_id: UUID):
        self.store_id = store_id
        self.product_id = product_id
        super().__init__("Inventory record")
        self.details = {"store_id": str(store_id), "product_id": str(product_id)}


class InvalidStateError(POSError):
    """Operation attempted from a state that does not permit it."""

    code = "INVALID_STATE"
    status_code = 409

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        details = {"current_status": current_status} if current_status else None
        super().__init__(message, details)


class LedgerError(POSError):
    """A ledger invariant would be violated."""

    code = "LEDGER_ERROR"
    status_code = 409


class InsufficientAvailableError(LedgerError):
    code = "INSUFFICIENT_AVAILABLE"

    def __init__(self, available: Any, requested: Any):
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient available inventory. Available: {available}, Requested: {requested}",
            {"available": str(available), "requested": str(requested)},
        )


class InsufficientInventoryError(InsufficientAvailableError):
    """Source store cannot cover a transfer at creation time."""

    code = "INSUFFICIENT_INVENTORY"


class InsufficientQuantityError(LedgerError):
    code = "INSUFFICIENT_QUANTITY"

    def __init__(self, on_hand: Any, reserved: Any, delta: Any):
        self.on_hand = on_hand
        self.reserved = reserved
        self.delta = delta
        super().__init__(
            f"Insufficient inventory quantity. On hand: {on_hand}, Reserved: {reserved}, Change: {delta}",
            {"on_hand": str(on_hand), "reserved": str(reserved), "delta": str(delta)},
        )


class OverReleaseError(LedgerError):
    code = "OVER_RELEASE"

    def __init__(self, reserved: Any, requested: Any):
        self.reserved = reserved
        self.requested = requested
        super().__init__(
            f"Cannot release more than reserved quantity. Reserved: {reserved}, Requested: {requested}",
            {"reserved": str(reserved), "requested": str(requested)},
        )


class UnauthorizedError(POSError):
    """Actor lacks the role required for the action."""

    code = "UNAUTHORIZED"
    status_code = 403


class DuplicateRecordError(POSError):
    code = "DUPLICATE_RECORD"
    status_code = 409


class ValidationError(POSError):
    """Malformed input that passed schema validation but fails a business check."""

    code = "VALIDATION_ERROR"
    status_code = 400


class ApprovalHandlerNotImplementedError(POSError):
    """No outcome handler is registered for an approval object type."""

    code = "APPROVAL_HANDLER_NOT_IMPLEMENTED"
    status_code = 501

    def __init__(self, object_type: str):
        self.object_type = object_type
        super().__init__(f"No approval outcome handler registered for '{object_type}'")
