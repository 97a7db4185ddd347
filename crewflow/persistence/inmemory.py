"""In-memory run log."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .models import RunRecord, step_record_from_result
from .repository import RunLog

TERMINAL = ("completed", "failed")


class InMemoryRunLog(RunLog):
    """Keep run records in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, RunRecord] = {}
        self._step_id = 0

    # ------------------------------------------------------------------
    async def create_run(
        self,
        workflow_id: str,
        crew_id: str,
        crew_name: str,
        definition: dict[str, Any],
        input: str,
    ) -> None:
        self._runs[workflow_id] = RunRecord(
            workflow_id=workflow_id,
            crew_id=crew_id,
            crew_name=crew_name,
            workflow_type=definition.get("type", ""),
            input=input,
            definition=definition,
            started_at=datetime.now(timezone.utc),
        )

    async def record_step(self, workflow_id: str, result: dict[str, Any]) -> None:
        run = self._runs.get(workflow_id)
        if not run:
            return
        self._step_id += 1
        run.steps.append(
            step_record_from_result(
                workflow_id,
                result,
                id=self._step_id,
                recorded_at=datetime.now(timezone.utc),
            )
        )

    async def update_status(
        self, workflow_id: str, status: str, error: Optional[str] = None
    ) -> None:
        run = self._runs.get(workflow_id)
        if not run:
            return
        run.status = status
        run.error = error
        if status in TERMINAL:
            run.completed_at = datetime.now(timezone.utc)

    async def get_run(self, workflow_id: str) -> RunRecord | None:
        run = self._runs.get(workflow_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self) -> list[RunRecord]:
        return [run.model_copy(update={"steps": []}) for run in self._runs.values()]
