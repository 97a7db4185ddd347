"""In-memory versioned history of workflow states."""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from ..constants import DEFAULT_SNAPSHOT_LIMIT
from ..contracts import Snapshot, WorkflowState, utcnow

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Keep snapshots per workflow id, ordered oldest first.

    History keeps the last ``limit`` snapshots plus the newest snapshot taken
    at each ``step_index``, so a rollback target stays reachable for every step
    the workflow ever reached. It can therefore grow past ``limit``.
    """

    def __init__(self, limit: int = DEFAULT_SNAPSHOT_LIMIT) -> None:
        if limit < 1:
            raise ValueError("Snapshot limit must be at least 1")
        self._limit = limit
        self._history: Dict[str, List[Snapshot]] = {}
        self._sequence: Dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    def record(self, state: WorkflowState, reason: str) -> Snapshot:
        """Store a deep copy of ``state`` and return the new snapshot."""
        with self._lock:
            sequence = self._sequence.get(state.id, 0) + 1
            self._sequence[state.id] = sequence
            snapshot = Snapshot(
                workflow_id=state.id,
                step_index=state.current_step_index,
                sequence=sequence,
                reason=reason,
                taken_at=utcnow(),
                state=state.model_copy(deep=True),
            )
            history = self._history.setdefault(state.id, [])
            history.append(snapshot)
            self._evict(history)
        logger.debug(
            f"Snapshot #{sequence} of {state.id} at step {snapshot.step_index} ({reason})"
        )
        return snapshot

    def _evict(self, history: List[Snapshot]) -> None:
        if len(history) <= self._limit:
            return
        newest_by_step: Dict[int, int] = {}
        for position, snapshot in enumerate(history):
            newest_by_step[snapshot.step_index] = position
        pinned = set(newest_by_step.values())
        cutoff = len(history) - self._limit
        history[:] = [
            snapshot
            for position, snapshot in enumerate(history)
            if position >= cutoff or position in pinned
        ]

    def history(self, workflow_id: str) -> List[Snapshot]:
        """Return snapshots for ``workflow_id``, newest last."""
        with self._lock:
            return list(self._history.get(workflow_id, []))

    def latest_at(self, workflow_id: str, step_index: int) -> Optional[Snapshot]:
        """Return the most recent snapshot taken at ``step_index``."""
        with self._lock:
            for snapshot in reversed(self._history.get(workflow_id, [])):
                if snapshot.step_index == step_index:
                    return snapshot
        return None

    def discard(self, workflow_id: str) -> None:
        with self._lock:
            self._history.pop(workflow_id, None)
            self._sequence.pop(workflow_id, None)
