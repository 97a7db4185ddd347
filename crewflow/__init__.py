"""crewflow: orchestration engine for multi-agent AI workflows."""

from .agents import AgentInvoker, AgentProfile, CallableInvoker
from .config import CrewflowConfig, load_config
from .contracts import (
    ApprovalDecision,
    ApprovalRequest,
    ExecutionResult,
    StepResult,
    WorkflowState,
    parse_definition,
)
from .engine import ApprovalGateManager, RollbackManager, WorkflowStateManager
from .execute import StepExecutor
from .persistence import get_run_log
from .runtime import Engine, build_engine
from .streaming import format_sse, stream_execution

__version__ = "0.1.0"
__all__ = [
    "AgentInvoker",
    "AgentProfile",
    "ApprovalDecision",
    "ApprovalGateManager",
    "ApprovalRequest",
    "CallableInvoker",
    "CrewflowConfig",
    "Engine",
    "ExecutionResult",
    "RollbackManager",
    "StepExecutor",
    "StepResult",
    "WorkflowState",
    "WorkflowStateManager",
    "build_engine",
    "format_sse",
    "get_run_log",
    "load_config",
    "parse_definition",
    "stream_execution",
]
