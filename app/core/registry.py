"""
Wiring of approval outcome handlers.

Each domain module that can be gated by an approval exposes a
`register_*_handlers(registry)` function; this is the one place that imports
them, so the approvals module stays independent of the domains it drives.
"""
from app.modules.approvals.handlers import ApprovalHandlerRegistry
from app.modules.transfers.handlers import register_transfer_handlers


def build_approval_handlers() -> ApprovalHandlerRegistry:
    registry = ApprovalHandlerRegistry()
    register_transfer_handlers(registry)
    return registry
