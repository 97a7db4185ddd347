"""Error taxonomy for the crewflow engine.

Managers raise these and the executor decides what to do with them. None of
them is meant to escape the engine: the executor turns them into a failed
workflow with the message recorded.
"""

from __future__ import annotations

from typing import Optional


class CrewflowError(Exception):
    """Base class for all engine errors."""


class NotFound(CrewflowError):
    """An unknown workflow or gate id was referenced."""


class WorkflowNotFound(NotFound):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow state not found: {workflow_id}")
        self.workflow_id = workflow_id


class AlreadyExists(CrewflowError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow state already exists: {workflow_id}")
        self.workflow_id = workflow_id


class InvalidTransition(CrewflowError):
    def __init__(self, workflow_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Invalid status transition for {workflow_id}: {current} -> {requested}"
        )
        self.workflow_id = workflow_id
        self.current = current
        self.requested = requested


class OutOfOrderStep(CrewflowError):
    def __init__(self, workflow_id: str, expected: int, received: int) -> None:
        super().__init__(
            f"Out of order step result for {workflow_id}: expected step_index "
            f"{expected}, got {received}"
        )
        self.workflow_id = workflow_id
        self.expected = expected
        self.received = received


class DuplicateGate(CrewflowError):
    def __init__(self, workflow_id: str, step_index: int) -> None:
        super().__init__(
            f"An approval gate is already pending for {workflow_id} step {step_index}"
        )
        self.workflow_id = workflow_id
        self.step_index = step_index


class GateNotFound(NotFound):
    def __init__(self, gate_id: str) -> None:
        super().__init__(f"No pending approval found for gate: {gate_id}")
        self.gate_id = gate_id


class NoSnapshot(CrewflowError):
    def __init__(self, workflow_id: str, step_index: int) -> None:
        super().__init__(f"No snapshot of {workflow_id} at step {step_index}")
        self.workflow_id = workflow_id
        self.step_index = step_index


class NoSuccessfulStep(CrewflowError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"No successful step found to rollback to in {workflow_id}")
        self.workflow_id = workflow_id


class AgentInvocationFailed(CrewflowError):
    """Wraps a failure raised by the agent-invocation collaborator."""

    def __init__(
        self, agent_id: str, message: str, cause: Optional[BaseException] = None
    ) -> None:
        super().__init__(message)
        self.agent_id = agent_id
        self.cause = cause


class AgentNotFound(AgentInvocationFailed):
    def __init__(self, agent_id: str) -> None:
        super().__init__(agent_id, f"Agent not found: {agent_id}")


class InvocationCancelled(AgentInvocationFailed):
    def __init__(self, agent_id: str) -> None:
        super().__init__(agent_id, "Agent invocation cancelled")


class Exhausted(CrewflowError):
    def __init__(self, workflow_id: str, step_index: int, max_attempts: int) -> None:
        super().__init__(
            f"Retry budget exhausted for {workflow_id} step {step_index} "
            f"after {max_attempts} attempt(s)"
        )
        self.workflow_id = workflow_id
        self.step_index = step_index
        self.max_attempts = max_attempts
