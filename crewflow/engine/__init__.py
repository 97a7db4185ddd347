"""Orchestration components: state, approvals and rollback."""

from __future__ import annotations

from .approvals import ApprovalGateManager, ApprovalHandle
from .rollback import RollbackManager
from .snapshots import SnapshotStore
from .state import ALLOWED_TRANSITIONS, WorkflowStateManager, can_transition

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ApprovalGateManager",
    "ApprovalHandle",
    "RollbackManager",
    "SnapshotStore",
    "WorkflowStateManager",
    "can_transition",
]
