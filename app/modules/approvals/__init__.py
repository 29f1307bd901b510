"""
Approvals module

Decides whether an operation needs sign-off and runs the multi-level
approval of the operations that do.

Components:
- models.py: ApprovalRule, ApprovalRequest and their enums
- schemas.py: rule conditions, levels, request and decision schemas
- matcher.py: newest-first rule matching
- handlers.py: registry of per-object-type outcome handlers
- service.py: rule CRUD and the approval request state machine
- tasks.py: periodic expiry of overdue requests
- router.py: REST endpoints
- tests.py: unit and integration tests
"""

__version__ = "1.0.0"
