"""Canonical owner of workflow state.

Every mutation of a :class:`WorkflowState` goes through
:class:`WorkflowStateManager`. Mutations are serialized per workflow id with
one lock per id, and each one records a snapshot inside the same critical
section, so snapshot history always matches the sequence of mutations.
Readers receive deep copies; the stored state is never handed out.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterator, List, Optional

from ..constants import CONTEXT_INITIAL_INPUT
from ..contracts import (
    Snapshot,
    StepResult,
    WorkflowDefinition,
    WorkflowState,
    WorkflowStatus,
    parse_definition,
    utcnow,
)
from ..errors import AlreadyExists, InvalidTransition, OutOfOrderStep, WorkflowNotFound
from .snapshots import SnapshotStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"running"}),
    "running": frozenset({"running", "paused", "completed", "failed"}),
    "paused": frozenset({"running"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


def can_transition(current: str, requested: str) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass
class _Waiter:
    event: asyncio.Event
    loop: asyncio.AbstractEventLoop


class WorkflowStateManager:
    """Create, mutate, snapshot and delete workflow states."""

    def __init__(self, snapshots: Optional[SnapshotStore] = None) -> None:
        self._snapshots = snapshots or SnapshotStore()
        self._states: Dict[str, WorkflowState] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        self._runnable: Dict[str, _Waiter] = {}

    # ------------------------------------------------------------------
    # Internals
    def _lock_for(self, workflow_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(workflow_id)
            if lock is None:
                lock = self._locks[workflow_id] = threading.RLock()
            return lock

    @contextmanager
    def _mutate(self, workflow_id: str, reason: str) -> Iterator[WorkflowState]:
        """Stamp and yield the live state under its lock, then snapshot it."""
        with self._lock_for(workflow_id):
            state = self._states.get(workflow_id)
            if state is None:
                raise WorkflowNotFound(workflow_id)
            previous_update = state.updated_at
            state.updated_at = utcnow()
            try:
                yield state
            except BaseException:
                state.updated_at = previous_update
                raise
            self._snapshots.record(state, reason)

    def _waiter(self, workflow_id: str) -> _Waiter:
        """Return the wake-up event of ``workflow_id`` bound to the running loop."""
        loop = asyncio.get_running_loop()
        with self._registry_lock:
            waiter = self._runnable.get(workflow_id)
            if waiter is None or waiter.loop is not loop:
                waiter = self._runnable[workflow_id] = _Waiter(event=asyncio.Event(), loop=loop)
            return waiter

    def _wake(self, workflow_id: str, discard: bool = False) -> None:
        """Wake waiters of ``workflow_id`` from any thread."""
        with self._registry_lock:
            if discard:
                waiter = self._runnable.pop(workflow_id, None)
            else:
                waiter = self._runnable.get(workflow_id)
        if waiter is None or waiter.loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is waiter.loop:
            waiter.event.set()
        else:
            waiter.loop.call_soon_threadsafe(waiter.event.set)

    def _signal(self, workflow_id: str, status: str) -> None:
        # Waiters clear their event before re-reading the status, so only
        # transitions out of ``paused`` need to wake them.
        if status != "paused":
            self._wake(workflow_id)

    # ------------------------------------------------------------------
    # Lifecycle
    def create_state(
        self,
        workflow_id: str,
        crew_id: str,
        crew_name: str,
        definition: WorkflowDefinition | dict,
        input: str,
    ) -> WorkflowState:
        """Create a ``pending`` state.

        A finished (completed or failed) state under the same id is replaced;
        a live one raises :class:`AlreadyExists`.
        """
        definition = parse_definition(definition)
        with self._lock_for(workflow_id):
            existing = self._states.get(workflow_id)
            if existing is not None:
                if not existing.is_terminal:
                    raise AlreadyExists(workflow_id)
                logger.info(f"Replacing finished workflow state {workflow_id}")
                self._snapshots.discard(workflow_id)
            state = WorkflowState(
                id=workflow_id,
                crew_id=crew_id,
                crew_name=crew_name,
                definition=definition,
                input=input,
                context={CONTEXT_INITIAL_INPUT: input},
            )
            self._states[workflow_id] = state
            self._snapshots.record(state, "created")
            self._signal(workflow_id, state.status)
            logger.info(
                f"Created {definition.type} workflow {workflow_id} for crew {crew_name}"
            )
            return state.model_copy(deep=True)

    def get_state(self, workflow_id: str) -> Optional[WorkflowState]:
        if workflow_id not in self._states:
            return None
        with self._lock_for(workflow_id):
            state = self._states.get(workflow_id)
            return state.model_copy(deep=True) if state is not None else None

    def require_state(self, workflow_id: str) -> WorkflowState:
        """Like :meth:`get_state` but raises :class:`WorkflowNotFound`."""
        state = self.get_state(workflow_id)
        if state is None:
            raise WorkflowNotFound(workflow_id)
        return state

    def list_states(
        self, status: Optional[WorkflowStatus] = None, crew_id: Optional[str] = None
    ) -> List[WorkflowState]:
        with self._registry_lock:
            workflow_ids = list(self._states)
        states = [s for s in map(self.get_state, workflow_ids) if s is not None]
        if status:
            states = [s for s in states if s.status == status]
        if crew_id:
            states = [s for s in states if s.crew_id == crew_id]
        return states

    def delete_state(self, workflow_id: str) -> bool:
        with self._lock_for(workflow_id):
            deleted = self._states.pop(workflow_id, None) is not None
            self._snapshots.discard(workflow_id)
        with self._registry_lock:
            self._locks.pop(workflow_id, None)
        self._wake(workflow_id, discard=True)
        if deleted:
            logger.info(f"Deleted workflow state {workflow_id}")
        return deleted

    def cleanup_old_workflows(self, older_than: timedelta) -> int:
        """Delete finished workflows that ended more than ``older_than`` ago."""
        cutoff = utcnow() - older_than
        expired = [
            state.id
            for state in self.list_states()
            if state.is_terminal and state.ended_at and state.ended_at < cutoff
        ]
        return sum(1 for workflow_id in expired if self.delete_state(workflow_id))

    # ------------------------------------------------------------------
    # Status
    def update_status(self, workflow_id: str, status: WorkflowStatus) -> WorkflowState:
        with self._mutate(workflow_id, f"status:{status}") as state:
            self._apply_status(state, status)
            return state.model_copy(deep=True)

    def _apply_status(self, state: WorkflowState, status: WorkflowStatus) -> None:
        if not can_transition(state.status, status):
            raise InvalidTransition(state.id, state.status, status)
        previous, now = state.status, utcnow()
        state.status = status
        if status == "paused":
            state.paused_at = now
        elif status == "running" and previous == "paused":
            state.resumed_at = now
        elif status in ("completed", "failed"):
            state.ended_at = now
        self._signal(state.id, status)
        if previous != status:
            logger.info(f"Workflow {state.id}: {previous} -> {status}")

    def pause_workflow(self, workflow_id: str) -> WorkflowState:
        with self._mutate(workflow_id, "status:paused") as state:
            if state.status != "running":
                raise InvalidTransition(workflow_id, state.status, "paused")
            self._apply_status(state, "paused")
            return state.model_copy(deep=True)

    def resume_workflow(self, workflow_id: str) -> WorkflowState:
        with self._mutate(workflow_id, "status:running") as state:
            if state.status != "paused":
                raise InvalidTransition(workflow_id, state.status, "running")
            self._apply_status(state, "running")
            return state.model_copy(deep=True)

    def complete_workflow(self, workflow_id: str) -> WorkflowState:
        return self.update_status(workflow_id, "completed")

    def fail_workflow(self, workflow_id: str, error: str) -> WorkflowState:
        """Transition to ``failed`` recording ``error``.

        Failing an already failed workflow only fills in a missing error.
        """
        with self._mutate(workflow_id, "status:failed") as state:
            if state.status != "failed":
                self._apply_status(state, "failed")
            if state.error is None:
                state.error = error
            logger.error(f"Workflow {workflow_id} failed: {state.error}")
            return state.model_copy(deep=True)

    async def wait_until_runnable(self, workflow_id: str) -> WorkflowStatus:
        """Suspend while the workflow is paused and return its status."""
        waiter = self._waiter(workflow_id)
        while True:
            waiter.event.clear()
            state = self.require_state(workflow_id)
            if state.status != "paused":
                return state.status
            logger.debug(f"Workflow {workflow_id} is paused, waiting for resume")
            await waiter.event.wait()

    # ------------------------------------------------------------------
    # Context and step results
    def update_context(self, workflow_id: str, partial: Dict[str, Any]) -> WorkflowState:
        """Shallow-merge ``partial`` into the context, whatever the status."""
        with self._mutate(workflow_id, "context") as state:
            state.context = {**state.context, **partial}
            return state.model_copy(deep=True)

    def add_step_result(self, workflow_id: str, result: StepResult) -> WorkflowState:
        """Append ``result``; its ``step_index`` must be the next free slot."""
        with self._mutate(workflow_id, f"step:{result.step_index}") as state:
            expected = len(state.step_results)
            if result.step_index != expected:
                raise OutOfOrderStep(workflow_id, expected, result.step_index)
            state.step_results.append(result.model_copy(deep=True))
            state.current_step_index = result.step_index + 1
            return state.model_copy(deep=True)

    def append_step_result(self, workflow_id: str, result: StepResult) -> StepResult:
        """Append ``result`` at the next free slot, assigning its ``step_index``."""
        with self._lock_for(workflow_id):
            state = self._states.get(workflow_id)
            if state is None:
                raise WorkflowNotFound(workflow_id)
            placed = result.model_copy(update={"step_index": len(state.step_results)})
            self.add_step_result(workflow_id, placed)
            return placed

    # ------------------------------------------------------------------
    # Snapshots
    def get_snapshots(self, workflow_id: str) -> List[Snapshot]:
        return self._snapshots.history(workflow_id)

    def latest_snapshot_at(self, workflow_id: str, step_index: int) -> Optional[Snapshot]:
        return self._snapshots.latest_at(workflow_id, step_index)

    def restore_snapshot(
        self,
        workflow_id: str,
        snapshot: Snapshot,
        target_step_index: int,
        status: WorkflowStatus,
    ) -> WorkflowState:
        """Replace the live state with ``snapshot`` rewound to ``target_step_index``.

        Only the rollback manager calls this. The restored state is recorded as
        a new snapshot rather than rewriting history.
        """
        if status in ("completed", "failed"):
            raise ValueError("A restored workflow must have a non-terminal status")
        with self._lock_for(workflow_id):
            if workflow_id not in self._states:
                raise WorkflowNotFound(workflow_id)
            restored = snapshot.state.model_copy(deep=True)
            restored.step_results = [
                r for r in restored.step_results if r.step_index < target_step_index
            ]
            restored.current_step_index = target_step_index
            restored.status = status
            restored.error = None
            restored.ended_at = None
            restored.updated_at = utcnow()
            self._states[workflow_id] = restored
            self._snapshots.record(restored, f"rollback:{target_step_index}")
            self._signal(workflow_id, status)
            return restored.model_copy(deep=True)
