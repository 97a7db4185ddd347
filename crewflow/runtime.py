"""Explicit construction of the engine components.

Nothing in crewflow is a process-wide singleton. :func:`build_engine` wires one
set of managers together and hands them back; the caller owns their lifetime.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from .agents.base import AgentInvoker, AgentProfile
from .config import CrewflowConfig
from .engine.approvals import ApprovalGateManager, ApprovalListener
from .engine.rollback import RollbackManager
from .engine.snapshots import SnapshotStore
from .engine.state import WorkflowStateManager
from .execute import StepExecutor
from .persistence import get_run_log
from .persistence.repository import RunLog

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    config: CrewflowConfig
    states: WorkflowStateManager
    approvals: ApprovalGateManager
    rollback: RollbackManager
    executor: StepExecutor
    run_log: RunLog


def build_engine(
    invoker: AgentInvoker,
    config: Optional[CrewflowConfig] = None,
    agents: Optional[Mapping[str, AgentProfile]] = None,
    run_log: Optional[RunLog] = None,
    on_approval_request: Optional[ApprovalListener] = None,
) -> Engine:
    """Construct and connect the engine components."""
    config = config or CrewflowConfig()
    run_log = run_log or get_run_log(config=config)
    states = WorkflowStateManager(SnapshotStore(limit=config.engine.snapshot_limit))
    approvals = ApprovalGateManager(
        default_timeout=config.engine.approval_timeout,
        on_request=on_approval_request,
    )
    rollback = RollbackManager(states)
    executor = StepExecutor(
        states,
        approvals,
        rollback,
        invoker,
        agents=agents,
        run_log=run_log,
        config=config.engine,
    )
    logger.debug(f"Engine built with run log {type(run_log).__name__}")
    return Engine(
        config=config,
        states=states,
        approvals=approvals,
        rollback=rollback,
        executor=executor,
        run_log=run_log,
    )
