"""Rollback and error recovery for workflows."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Tuple

from ..constants import CONTEXT_SKIPPED_STEPS, SKIPPED_STEP_ERROR
from ..contracts import (
    AbortStrategy,
    CompensationAction,
    RecoveryResult,
    RetryStrategy,
    RollbackStrategy,
    SkipStrategy,
    StepResult,
    WorkflowState,
    parse_strategy,
)
from ..errors import Exhausted, NoSnapshot, NoSuccessfulStep
from ..utils.retry import schedule_retry
from .state import WorkflowStateManager

logger = logging.getLogger(__name__)


class RollbackManager:
    """Roll workflows back through their snapshots and apply recovery strategies.

    The only state kept here are the retry and rollback counters, keyed by
    ``(workflow_id, definition step index)``. Counters only grow until
    :meth:`clear_retry_counters` is called.
    """

    def __init__(self, states: WorkflowStateManager) -> None:
        self._states = states
        self._retries: Dict[Tuple[str, int], int] = {}
        self._rollbacks: Dict[Tuple[str, int], int] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Rollback
    def rollback_to_step(self, workflow_id: str, target_step_index: int) -> WorkflowState:
        """Restore the workflow as it was when it reached ``target_step_index``.

        Step results from ``target_step_index`` on are discarded. A running
        workflow stays running; any other workflow comes back paused.
        """
        state = self._states.require_state(workflow_id)
        if not 0 <= target_step_index <= state.current_step_index:
            raise NoSnapshot(workflow_id, target_step_index)
        snapshot = self._states.latest_snapshot_at(workflow_id, target_step_index)
        if snapshot is None:
            raise NoSnapshot(workflow_id, target_step_index)

        status = "running" if state.status == "running" else "paused"
        restored = self._states.restore_snapshot(
            workflow_id, snapshot, target_step_index, status
        )
        logger.info(
            f"Rolled back workflow {workflow_id} to step {target_step_index} "
            f"(discarded {len(state.step_results) - len(restored.step_results)} result(s))"
        )
        return restored

    def rollback_to_last_success(self, workflow_id: str) -> WorkflowState:
        """Discard the failed tail after the most recent successful step."""
        state = self._states.require_state(workflow_id)
        last_success = next(
            (r for r in reversed(state.step_results) if r.success), None
        )
        if last_success is None:
            raise NoSuccessfulStep(workflow_id)
        return self.rollback_to_step(workflow_id, last_success.step_index + 1)

    # ------------------------------------------------------------------
    # Recovery
    async def recover_from_error(
        self, workflow_id: str, failed_step: StepResult | dict, strategy: Any
    ) -> RecoveryResult:
        """Apply ``strategy`` to ``failed_step``.

        ``next_step_index`` of the result is the definition step the caller
        should continue from when ``recovered`` is true.
        """
        self._states.require_state(workflow_id)
        if not isinstance(failed_step, StepResult):
            failed_step = StepResult.model_validate(failed_step)
        strategy = parse_strategy(strategy)

        if isinstance(strategy, RetryStrategy):
            return await self._retry(workflow_id, failed_step, strategy)
        if isinstance(strategy, SkipStrategy):
            return self._skip(workflow_id, failed_step)
        if isinstance(strategy, RollbackStrategy):
            return self._rollback(workflow_id, failed_step, strategy)
        if isinstance(strategy, AbortStrategy):
            detail = (
                f"Workflow aborted at step {failed_step.definition_index}: "
                f"{failed_step.error or 'step failed'}"
            )
            self._states.fail_workflow(workflow_id, detail)
            return RecoveryResult(recovered=False, strategy=strategy.kind, detail=detail)
        raise ValueError(f"Unknown recovery strategy: {strategy!r}")

    async def _retry(
        self, workflow_id: str, failed_step: StepResult, strategy: RetryStrategy
    ) -> RecoveryResult:
        step = failed_step.definition_index
        with self._lock:
            attempts = self._retries.get((workflow_id, step), 0) + 1
            self._retries[(workflow_id, step)] = attempts

        if attempts >= strategy.max_attempts:
            exhausted = Exhausted(workflow_id, step, strategy.max_attempts)
            logger.warning(str(exhausted))
            self._states.fail_workflow(workflow_id, str(exhausted))
            return RecoveryResult(
                recovered=False, strategy=strategy.kind, detail=str(exhausted)
            )

        if strategy.backoff:
            await schedule_retry(attempts, base=strategy.backoff)
        detail = f"Retrying step {step} (attempt {attempts + 1}/{strategy.max_attempts})"
        logger.warning(f"Workflow {workflow_id}: {detail}")
        return RecoveryResult(
            recovered=True, strategy=strategy.kind, detail=detail, next_step_index=step
        )

    def _skip(self, workflow_id: str, failed_step: StepResult) -> RecoveryResult:
        step = failed_step.definition_index
        marker = failed_step.model_copy(
            update={"output": "", "success": False, "error": SKIPPED_STEP_ERROR}
        )
        marker = self._states.append_step_result(workflow_id, marker)
        skipped = self._states.require_state(workflow_id).context.get(
            CONTEXT_SKIPPED_STEPS, []
        )
        self._states.update_context(
            workflow_id, {CONTEXT_SKIPPED_STEPS: [*skipped, step]}
        )
        detail = f"Skipped failed step {step}"
        logger.warning(f"Workflow {workflow_id}: {detail}")
        return RecoveryResult(
            recovered=True,
            strategy="skip",
            detail=detail,
            next_step_index=step + 1,
            marker=marker,
        )

    def _rollback(
        self, workflow_id: str, failed_step: StepResult, strategy: RollbackStrategy
    ) -> RecoveryResult:
        step = failed_step.definition_index
        with self._lock:
            rollbacks = self._rollbacks.get((workflow_id, step), 0) + 1
            self._rollbacks[(workflow_id, step)] = rollbacks
        if rollbacks > strategy.max_rollbacks:
            return RecoveryResult(
                recovered=False,
                strategy=strategy.kind,
                detail=f"Rollback limit ({strategy.max_rollbacks}) reached for step {step}",
            )
        try:
            restored = self.rollback_to_last_success(workflow_id)
        except (NoSuccessfulStep, NoSnapshot) as e:
            return RecoveryResult(
                recovered=False, strategy=strategy.kind, detail=f"Rollback failed: {e}"
            )
        resume_at = restored.step_results[-1].definition_index + 1
        return RecoveryResult(
            recovered=True,
            strategy=strategy.kind,
            detail=f"Rolled back to step {restored.current_step_index} after failure of step {step}",
            next_step_index=resume_at,
        )

    # ------------------------------------------------------------------
    def get_compensation_actions(
        self, workflow_id: str, from_step_index: int, to_step_index: int
    ) -> List[CompensationAction]:
        """List successful steps in the inclusive range, ordered by step index.

        Nothing is executed; callers decide what undoing a step means.
        """
        state = self._states.require_state(workflow_id)
        low, high = sorted((from_step_index, to_step_index))
        return [
            CompensationAction(
                step_index=result.step_index,
                definition_index=result.definition_index,
                agent_id=result.agent_id,
                action=f"Compensate output of {result.agent_name} (step {result.definition_index})",
                original_output=result.output,
                original_input=result.input,
            )
            for result in state.step_results
            if low <= result.step_index <= high and result.success
        ]

    def get_retry_count(self, workflow_id: str, step_index: int) -> int:
        with self._lock:
            return self._retries.get((workflow_id, step_index), 0)

    def clear_retry_counters(self, workflow_id: str) -> int:
        """Reset retry and rollback counters of ``workflow_id``."""
        with self._lock:
            keys = [key for key in self._retries if key[0] == workflow_id]
            for key in keys:
                del self._retries[key]
            for key in [key for key in self._rollbacks if key[0] == workflow_id]:
                del self._rollbacks[key]
        if keys:
            logger.debug(f"Cleared {len(keys)} retry counter(s) for {workflow_id}")
        return len(keys)
