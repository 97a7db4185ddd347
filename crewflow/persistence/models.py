"""Data models for logged workflow runs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class StepRecord(BaseModel):
    """One logged step attempt."""

    id: Optional[int] = None
    workflow_id: str
    step_index: int
    definition_index: int
    agent_id: str
    agent_name: str
    success: bool
    output: str = ""
    error: Optional[str] = None
    duration: float = 0.0
    recorded_at: Optional[datetime] = None


class RunRecord(BaseModel):
    """Logged workflow run."""

    workflow_id: str
    crew_id: str
    crew_name: str
    workflow_type: str
    input: str = ""
    definition: dict[str, Any] = Field(default_factory=dict)
    status: str = "running"
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    steps: list[StepRecord] = Field(default_factory=list)


RESULT_FIELDS = (
    "step_index",
    "definition_index",
    "agent_id",
    "agent_name",
    "success",
    "output",
    "error",
    "duration",
)


def step_record_from_result(
    workflow_id: str, result: dict[str, Any], **extra: Any
) -> StepRecord:
    """Build a :class:`StepRecord` from a dumped ``StepResult``."""
    fields = {key: result[key] for key in RESULT_FIELDS if key in result}
    return StepRecord(workflow_id=workflow_id, **fields, **extra)
