"""
Procurement Workflow Hub - Batch Workflow Operations

Multi-record operations built on the single-record WorkflowEngine.

Components:
- BulkOperationCoordinator: independent approve/reject over many records
- GroupCoordinator: expands split-order selections to whole groups
- FanoutLinker: creates per-vendor purchase orders from approved records
"""

from .bulk import BulkOperationCoordinator, BulkOutcome, BulkFailure
from .groups import GroupCoordinator, GroupBulkOutcome, SelectionState, selection_state
from .fanout import FanoutLinker, FanoutOutcome

__all__ = [
    'BulkOperationCoordinator',
    'BulkOutcome',
    'BulkFailure',
    'GroupCoordinator',
    'GroupBulkOutcome',
    'SelectionState',
    'selection_state',
    'FanoutLinker',
    'FanoutOutcome',
]
