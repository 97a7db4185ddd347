"""Core data contracts for the crewflow workflow engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from .constants import (
    CONTEXT_LAST_OUTCOME,
    CONTEXT_STEP_OUTCOMES,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_ROLLBACKS,
)


WorkflowType = Literal["sequential", "parallel", "conditional"]
WorkflowStatus = Literal["pending", "running", "paused", "completed", "failed"]
GateResolution = Literal["pending", "approved", "denied"]
DecisionOutcome = Literal["approved", "denied", "cancelled", "timed_out"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Recovery strategies


class RetryStrategy(BaseModel):
    """Re-invoke the failed step, up to ``max_attempts`` attempts in total."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["retry"] = "retry"
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff: float = Field(
        default=0.0, ge=0, description="Exponential backoff base in seconds, 0 disables"
    )


class SkipStrategy(BaseModel):
    """Mark the failed step as skipped and continue after it."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["skip"] = "skip"


class RollbackStrategy(BaseModel):
    """Discard the failed tail and resume after the last successful step."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["rollbackToLastSuccess"] = "rollbackToLastSuccess"
    max_rollbacks: int = Field(default=DEFAULT_MAX_ROLLBACKS, ge=1)


class AbortStrategy(BaseModel):
    """Fail the workflow."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["abort"] = "abort"


RecoveryStrategy = Annotated[
    Union[RetryStrategy, SkipStrategy, RollbackStrategy, AbortStrategy],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Workflow definitions


class StepCondition(BaseModel):
    """Branch predicate for conditional workflows.

    ``on`` checks the outcome of ``previous_step`` (or of the most recent step
    when unset). ``context_key`` optionally adds a check against the workflow
    context: truthiness of the value, or equality with ``equals``.
    """

    model_config = ConfigDict(frozen=True)

    on: Literal["success", "failure", "always"] = "always"
    previous_step: Optional[int] = Field(default=None, ge=0)
    context_key: Optional[str] = None
    equals: Any = None

    def evaluate(self, context: Dict[str, Any]) -> bool:
        """Return ``True`` when the step should run under ``context``."""
        return self._outcome_matches(context) and self._context_matches(context)

    def _outcome_matches(self, context: Dict[str, Any]) -> bool:
        if self.on == "always":
            return True
        if self.previous_step is None:
            outcome = context.get(CONTEXT_LAST_OUTCOME)
            if outcome is None:
                return self.on == "failure"
        else:
            outcomes = context.get(CONTEXT_STEP_OUTCOMES) or {}
            outcome = outcomes.get(str(self.previous_step))
            if outcome is None:
                return False
        return bool(outcome) if self.on == "success" else not outcome

    def _context_matches(self, context: Dict[str, Any]) -> bool:
        if self.context_key is None:
            return True
        value = context.get(self.context_key)
        if self.equals is None:
            return bool(value)
        return value == self.equals


class Step(BaseModel):
    """One unit of work delegated to a single agent."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    agent_id: str
    step_index: Optional[int] = Field(default=None, ge=0)
    name: Optional[str] = None
    input: Optional[str] = Field(
        default=None, description="Fixed prompt used instead of the composed one"
    )
    requires_approval: bool = False
    approval_timeout: Optional[float] = Field(default=None, gt=0)
    recovery: Optional[RecoveryStrategy] = None

    @property
    def display_name(self) -> str:
        return self.name or f"Step {self.step_index}"


class ConditionalStep(Step):
    condition: Optional[StepCondition] = None


class _WorkflowBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _assign_step_indices(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not isinstance(data.get("steps"), list):
            return data
        steps = []
        for position, step in enumerate(data["steps"]):
            if isinstance(step, dict) and step.get("step_index") is None:
                step = {**step, "step_index": position}
            elif isinstance(step, Step) and step.step_index is None:
                step = step.model_copy(update={"step_index": position})
            steps.append(step)
        return {**data, "steps": steps}

    @model_validator(mode="after")
    def _check_steps(self):
        if not self.steps:
            raise ValueError("A workflow needs at least one step")
        for position, step in enumerate(self.steps):
            if step.step_index != position:
                raise ValueError(
                    f"Step at position {position} declares step_index {step.step_index}"
                )
        return self


class SequentialWorkflow(_WorkflowBase):
    """Steps run strictly in order, each seeing the outputs before it."""

    type: Literal["sequential"] = "sequential"
    steps: List[Step]


class ParallelWorkflow(_WorkflowBase):
    """Steps run concurrently against the original input."""

    type: Literal["parallel"] = "parallel"
    steps: List[Step]


class ConditionalWorkflow(_WorkflowBase):
    """Steps run in order, each gated by an optional branch predicate."""

    type: Literal["conditional"] = "conditional"
    steps: List[ConditionalStep]


WorkflowDefinition = Annotated[
    Union[SequentialWorkflow, ParallelWorkflow, ConditionalWorkflow],
    Field(discriminator="type"),
]

_definition_adapter: TypeAdapter = TypeAdapter(WorkflowDefinition)
_strategy_adapter: TypeAdapter = TypeAdapter(RecoveryStrategy)


def parse_definition(data: Any) -> Union[SequentialWorkflow, ParallelWorkflow, ConditionalWorkflow]:
    """Validate raw input (dict or model) into a workflow definition variant."""
    if isinstance(data, (SequentialWorkflow, ParallelWorkflow, ConditionalWorkflow)):
        return data
    return _definition_adapter.validate_python(data)


def parse_strategy(data: Any) -> Union[RetryStrategy, SkipStrategy, RollbackStrategy, AbortStrategy]:
    """Validate raw input into a recovery strategy variant."""
    if isinstance(data, (RetryStrategy, SkipStrategy, RollbackStrategy, AbortStrategy)):
        return data
    return _strategy_adapter.validate_python(data)


# ---------------------------------------------------------------------------
# Workflow state


class StepResult(BaseModel):
    """Outcome of one step attempt.

    ``step_index`` is the slot of this entry in ``WorkflowState.step_results``;
    ``definition_index`` is the definition step that was attempted.
    """

    step_index: int = Field(ge=0)
    definition_index: int = Field(ge=0)
    agent_id: str
    agent_name: str
    input: str = ""
    output: str = ""
    success: bool
    error: Optional[str] = None
    attempt: int = 1
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime = Field(default_factory=utcnow)
    duration: float = 0.0


class WorkflowState(BaseModel):
    """Mutable aggregate for one workflow run."""

    id: str
    crew_id: str
    crew_name: str
    definition: WorkflowDefinition
    input: str
    status: WorkflowStatus = "pending"
    context: Dict[str, Any] = Field(default_factory=dict)
    step_results: List[StepResult] = Field(default_factory=list)
    current_step_index: int = 0
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Snapshot(BaseModel):
    """Immutable point-in-time copy of a workflow state."""

    model_config = ConfigDict(frozen=True)

    workflow_id: str
    step_index: int
    sequence: int
    reason: str
    taken_at: datetime = Field(default_factory=utcnow)
    state: WorkflowState


# ---------------------------------------------------------------------------
# Approvals


class ApprovalRequest(BaseModel):
    step_index: int = Field(ge=0)
    step_name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0, description="Seconds")


class ApprovalGate(BaseModel):
    """A blocking checkpoint waiting on a human decision."""

    gate_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    step_index: int
    step_name: str
    requested_data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    timeout: Optional[float] = None
    resolution: GateResolution = "pending"
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    reason: Optional[str] = None


class ApprovalDecision(BaseModel):
    approved: bool
    reason: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None
    outcome: Optional[DecisionOutcome] = None

    @model_validator(mode="after")
    def _default_outcome(self):
        if self.outcome is None:
            self.outcome = "approved" if self.approved else "denied"
        elif self.approved != (self.outcome == "approved"):
            raise ValueError(f"outcome {self.outcome!r} contradicts approved={self.approved}")
        return self


# ---------------------------------------------------------------------------
# Recovery and execution results


class CompensationAction(BaseModel):
    """Describes, without executing, how a rolled-back step could be undone."""

    step_index: int
    definition_index: int
    agent_id: str
    action: str
    original_output: str = ""
    original_input: str = ""


class RecoveryResult(BaseModel):
    recovered: bool
    strategy: str
    detail: str
    next_step_index: Optional[int] = Field(
        default=None, description="Definition step the executor continues from"
    )
    marker: Optional[StepResult] = Field(
        default=None, description="Result appended by the recovery itself, such as a skip marker"
    )


class ExecutionResult(BaseModel):
    """Final aggregate of one run."""

    workflow_id: str
    crew_id: str
    crew_name: str
    workflow_type: WorkflowType
    steps: List[StepResult] = Field(default_factory=list)
    success: bool = Field(
        description="Completed with the last attempt of every step that ran succeeding"
    )
    total_duration: float
    start_time: datetime
    end_time: datetime
    error: Optional[str] = None
