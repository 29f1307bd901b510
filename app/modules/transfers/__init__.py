"""
Inventory transfers module

Moves a quantity of one product from a source store to a destination store
of the same tenant, gated by the approvals module. Bulk transfers group
several products and open one transfer per item when approved.

Components:
- models.py: InventoryTransfer, BulkInventoryTransfer and their statuses
- schemas.py: request/response schemas
- service.py: the transfer state machine and its ledger coordination
- handlers.py: approval outcome handler registered at start-up
- router.py: REST endpoints
- bulk.py, bulk_router.py: bulk transfers
- tests.py: unit and integration tests
"""

__version__ = "1.0.0"
