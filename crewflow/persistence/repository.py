"""Run log abstraction.

The executor appends to the run log as a workflow progresses. The log is an
audit trail only: the engine never reads it back to make decisions.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

from .models import RunRecord


class RunLog(Protocol):
    """Protocol for run log backends."""

    async def create_run(
        self,
        workflow_id: str,
        crew_id: str,
        crew_name: str,
        definition: dict[str, Any],
        input: str,
    ) -> None:
        """Start a run record, replacing any earlier run under the same id."""

    async def record_step(self, workflow_id: str, result: dict[str, Any]) -> None:
        """Append a step attempt (a dumped ``StepResult``)."""

    async def update_status(
        self, workflow_id: str, status: str, error: Optional[str] = None
    ) -> None:
        """Record the run's latest status."""

    async def get_run(self, workflow_id: str) -> RunRecord | None:
        """Retrieve a run with its steps."""

    async def list_runs(self) -> list[RunRecord]:
        """Return all runs without their steps."""
