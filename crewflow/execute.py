"""Step execution engine for crewflow workflows."""

from __future__ import annotations

import asyncio
import functools
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from .agents.base import AgentInvoker, AgentProfile
from .config import EngineConfig
from .constants import (
    CONTEXT_LAST_OUTCOME,
    CONTEXT_STEP_OUTCOMES,
    UNKNOWN_AGENT_NAME,
)
from .contracts import (
    AbortStrategy,
    ApprovalRequest,
    ConditionalStep,
    ExecutionResult,
    RetryStrategy,
    RollbackStrategy,
    Step,
    StepResult,
    WorkflowDefinition,
    parse_definition,
    parse_strategy,
    utcnow,
)
from .engine.approvals import ApprovalGateManager
from .engine.rollback import RollbackManager
from .engine.state import WorkflowStateManager
from .errors import (
    AgentInvocationFailed,
    AgentNotFound,
    CrewflowError,
    DuplicateGate,
    InvalidTransition,
    WorkflowNotFound,
)
from .persistence.repository import RunLog
from .prompts import compose_prompt

logger = logging.getLogger(__name__)

StepCallback = Callable[[StepResult], None]
StepChunkCallback = Callable[[int, str], None]


def _all_steps_succeeded(steps: List[StepResult]) -> bool:
    """True when the last attempt of every definition step that ran succeeded."""
    final: Dict[int, bool] = {}
    for result in steps:
        final[result.definition_index] = result.success
    return all(final.values())


@dataclass
class _Run:
    workflow_id: str
    definition: Any
    input: str
    strategy: Any
    cancel_event: asyncio.Event
    on_step: Optional[StepCallback] = None
    on_chunk: Optional[StepChunkCallback] = None


class StepExecutor:
    """Turn a workflow definition and an input into agent invocations.

    The executor is the only component that makes recovery decisions. Every
    agent failure is recorded as a failed :class:`StepResult` before the
    rollback manager is consulted, and no engine error escapes a run: it ends
    the affected workflow as ``failed`` instead.
    """

    def __init__(
        self,
        states: WorkflowStateManager,
        approvals: ApprovalGateManager,
        rollback: RollbackManager,
        invoker: AgentInvoker,
        agents: Optional[Mapping[str, AgentProfile]] = None,
        run_log: Optional[RunLog] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self._states = states
        self._approvals = approvals
        self._rollback = rollback
        self._invoker = invoker
        self._agents = agents
        self._run_log = run_log
        self._config = config or EngineConfig()
        self._cancel_events: Dict[str, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Public API
    async def execute(
        self,
        crew_id: str,
        crew_name: str,
        definition: WorkflowDefinition | dict,
        input: str,
        workflow_id: Optional[str] = None,
        strategy: Any = None,
    ) -> ExecutionResult:
        """Run a workflow to completion and return the aggregate result."""
        return await self.execute_with_callbacks(
            crew_id,
            crew_name,
            definition,
            input,
            workflow_id=workflow_id,
            strategy=strategy,
        )

    async def execute_with_callbacks(
        self,
        crew_id: str,
        crew_name: str,
        definition: WorkflowDefinition | dict,
        input: str,
        on_step: Optional[StepCallback] = None,
        on_chunk: Optional[StepChunkCallback] = None,
        workflow_id: Optional[str] = None,
        strategy: Any = None,
    ) -> ExecutionResult:
        """Like :meth:`execute`, calling ``on_step`` as each step result is recorded.

        ``on_chunk(step_index, text)`` receives streamed agent output when the
        invoker supports it.
        """
        definition = parse_definition(definition)
        if strategy is not None:
            strategy = parse_strategy(strategy)
        workflow_id = workflow_id or str(uuid.uuid4())

        start_time = utcnow()
        started = time.monotonic()
        self._states.create_state(workflow_id, crew_id, crew_name, definition, input)
        self._rollback.clear_retry_counters(workflow_id)
        run = _Run(
            workflow_id=workflow_id,
            definition=definition,
            input=input,
            strategy=strategy,
            cancel_event=asyncio.Event(),
            on_step=on_step,
            on_chunk=on_chunk,
        )
        self._cancel_events[workflow_id] = run.cancel_event
        await self._log(
            "create_run",
            workflow_id,
            crew_id,
            crew_name,
            definition.model_dump(mode="json"),
            input,
        )
        logger.info(
            f"Executing {definition.type} workflow {workflow_id} "
            f"({len(definition.steps)} step(s)) for crew {crew_name}"
        )

        try:
            self._states.update_status(workflow_id, "running")
            if definition.type == "parallel":
                await self._run_parallel(run)
            else:
                await self._run_ordered(run)
            if await self._states.wait_until_runnable(workflow_id) == "running":
                self._states.complete_workflow(workflow_id)
        except WorkflowNotFound:
            logger.warning(f"Workflow {workflow_id} was deleted while executing")
        except Exception as e:
            logger.exception(f"Unexpected error while executing workflow {workflow_id}")
            self._fail(workflow_id, f"Workflow execution error: {e}")
        finally:
            self._cancel_events.pop(workflow_id, None)

        end_time = utcnow()
        state = self._states.get_state(workflow_id)
        if state is None:
            status, error, steps = "failed", "Workflow state was deleted", []
        else:
            status, error, steps = state.status, state.error, state.step_results
        await self._log("update_status", workflow_id, status, error)
        logger.info(f"Workflow {workflow_id} finished as {status}")
        return ExecutionResult(
            workflow_id=workflow_id,
            crew_id=crew_id,
            crew_name=crew_name,
            workflow_type=definition.type,
            steps=steps,
            success=status == "completed" and _all_steps_succeeded(steps),
            total_duration=time.monotonic() - started,
            start_time=start_time,
            end_time=end_time,
            error=error,
        )

    def cancel(self, workflow_id: str, reason: str = "Workflow cancelled") -> bool:
        """Fail a live workflow and interrupt its pending work.

        Returns ``False`` when the workflow is unknown or already finished.
        """
        state = self._states.get_state(workflow_id)
        if state is None or state.is_terminal:
            return False
        self._fail(workflow_id, reason)
        event = self._cancel_events.get(workflow_id)
        if event is not None:
            event.set()
        self._approvals.clear_workflow_approvals(workflow_id)
        logger.info(f"Cancelled workflow {workflow_id}: {reason}")
        return True

    # ------------------------------------------------------------------
    # Workflow types
    async def _run_ordered(self, run: _Run) -> None:
        """Sequential and conditional workflows: one step at a time."""
        steps = run.definition.steps
        approved: set[int] = set()
        index = 0
        while index < len(steps):
            if await self._states.wait_until_runnable(run.workflow_id) != "running":
                return
            step = steps[index]
            state = self._states.require_state(run.workflow_id)

            if isinstance(step, ConditionalStep) and step.condition is not None:
                if not step.condition.evaluate(state.context):
                    logger.info(
                        f"Workflow {run.workflow_id}: condition not met, skipping step {index}"
                    )
                    index += 1
                    continue

            prompt = compose_prompt(run.input, step, state.step_results)
            if step.requires_approval and index not in approved:
                if not await self._approve(run, step, prompt):
                    return
                approved.add(index)

            result = await self._attempt(run, step, prompt)
            if result.success:
                index += 1
                continue
            next_index = await self._recover(run, step, result)
            if next_index is None:
                return
            index = next_index

    async def _run_parallel(self, run: _Run) -> None:
        """Run every step as its own task against the original input."""
        outcomes = await asyncio.gather(
            *(self._run_branch(run, step) for step in run.definition.steps),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    async def _run_branch(self, run: _Run, step: Step) -> None:
        approved = False
        prompt = compose_prompt(run.input, step)
        while True:
            if await self._states.wait_until_runnable(run.workflow_id) != "running":
                return
            if step.requires_approval and not approved:
                if not await self._approve(run, step, prompt):
                    return
                approved = True
            result = await self._attempt(run, step, prompt)
            if result.success:
                return
            next_index = await self._recover(run, step, result)
            if next_index != step.step_index:
                return

    # ------------------------------------------------------------------
    # Single step
    async def _attempt(self, run: _Run, step: Step, prompt: str) -> StepResult:
        """Invoke the agent once and record the outcome."""
        definition_index = step.step_index
        profile = self._agents.get(step.agent_id) if self._agents is not None else None
        agent_name = profile.name if profile else step.agent_id
        attempt = self._rollback.get_retry_count(run.workflow_id, definition_index) + 1

        start_time = utcnow()
        started = time.monotonic()
        output, error = "", None
        if self._agents is not None and profile is None:
            agent_name = UNKNOWN_AGENT_NAME
            error = str(AgentNotFound(step.agent_id))
        else:
            on_chunk = None
            if run.on_chunk is not None:
                on_chunk = functools.partial(run.on_chunk, definition_index)
            logger.debug(
                f"Workflow {run.workflow_id}: invoking {step.agent_id} for step "
                f"{definition_index} (attempt {attempt})"
            )
            try:
                output = await self._invoker.invoke(
                    step.agent_id,
                    prompt,
                    on_chunk=on_chunk,
                    cancel_event=run.cancel_event,
                )
            except AgentNotFound as e:
                agent_name, error = UNKNOWN_AGENT_NAME, str(e)
            except AgentInvocationFailed as e:
                error = str(e)
            except Exception as e:
                error = str(AgentInvocationFailed(step.agent_id, str(e) or type(e).__name__, cause=e))

        result = StepResult(
            step_index=0,
            definition_index=definition_index,
            agent_id=step.agent_id,
            agent_name=agent_name,
            input=prompt,
            output=output or "",
            success=error is None,
            error=error,
            attempt=attempt,
            start_time=start_time,
            end_time=utcnow(),
            duration=time.monotonic() - started,
        )
        result = await self._record(run, result)
        if result.success:
            logger.info(
                f"Workflow {run.workflow_id}: step {definition_index} ({agent_name}) "
                f"completed in {result.duration:.2f}s"
            )
        else:
            logger.warning(
                f"Workflow {run.workflow_id}: step {definition_index} ({agent_name}) "
                f"failed: {error}"
            )
        return result

    async def _record(self, run: _Run, result: StepResult) -> StepResult:
        placed = self._states.append_step_result(run.workflow_id, result)
        outcomes = self._states.require_state(run.workflow_id).context.get(
            CONTEXT_STEP_OUTCOMES, {}
        )
        self._states.update_context(
            run.workflow_id,
            {
                CONTEXT_STEP_OUTCOMES: {
                    **outcomes,
                    str(placed.definition_index): placed.success,
                },
                CONTEXT_LAST_OUTCOME: placed.success,
            },
        )
        await self._publish(run, placed)
        return placed

    async def _publish(self, run: _Run, placed: StepResult) -> None:
        """Hand a recorded result to the run log and the step callback."""
        await self._log("record_step", run.workflow_id, placed.model_dump(mode="json"))
        if run.on_step is not None:
            try:
                run.on_step(placed.model_copy(deep=True))
            except Exception:
                logger.exception(f"Step callback failed for workflow {run.workflow_id}")

    async def _approve(self, run: _Run, step: Step, prompt: str) -> bool:
        """Block on an approval gate; a refusal fails the workflow."""
        request = ApprovalRequest(
            step_index=step.step_index,
            step_name=step.display_name,
            data={"agent_id": step.agent_id, "input": prompt},
            timeout=step.approval_timeout,
        )
        try:
            handle = self._approvals.request_approval(run.workflow_id, request)
        except DuplicateGate as e:
            self._fail(run.workflow_id, str(e))
            return False

        decision = await handle
        if decision.approved:
            logger.info(f"Workflow {run.workflow_id}: step {step.step_index} approved")
            return True

        error = f"Approval {decision.outcome}" + (
            f": {decision.reason}" if decision.reason else ""
        )
        profile = self._agents.get(step.agent_id) if self._agents is not None else None
        await self._record(
            run,
            StepResult(
                step_index=0,
                definition_index=step.step_index,
                agent_id=step.agent_id,
                agent_name=profile.name if profile else step.agent_id,
                input=prompt,
                success=False,
                error=error,
            ),
        )
        self._fail(run.workflow_id, f"Step {step.step_index} was not approved ({error})")
        return False

    async def _recover(self, run: _Run, step: Step, failed: StepResult) -> Optional[int]:
        """Apply the recovery strategy; return the definition step to continue from."""
        if run.cancel_event.is_set():
            return None
        strategy = self._strategy_for(run, step)
        if run.definition.type == "parallel" and isinstance(strategy, RollbackStrategy):
            strategy = AbortStrategy()
        try:
            recovery = await self._rollback.recover_from_error(
                run.workflow_id, failed, strategy
            )
        except CrewflowError as e:
            self._fail(run.workflow_id, str(e))
            return None
        if recovery.marker is not None:
            await self._publish(run, recovery.marker)
        if not recovery.recovered:
            self._fail(run.workflow_id, recovery.detail)
            return None
        return recovery.next_step_index

    def _strategy_for(self, run: _Run, step: Step) -> Any:
        if step.recovery is not None:
            return step.recovery
        if run.strategy is not None:
            return run.strategy
        kind = self._config.default_recovery or (
            "skip" if run.definition.type == "conditional" else "abort"
        )
        if kind == "retry":
            return RetryStrategy(
                max_attempts=self._config.default_max_attempts,
                backoff=self._config.retry_backoff,
            )
        return parse_strategy({"kind": kind})

    # ------------------------------------------------------------------
    # Helpers
    def _fail(self, workflow_id: str, error: str) -> None:
        """Move a live workflow to ``failed`` from whatever status it is in."""
        state = self._states.get_state(workflow_id)
        if state is None or state.is_terminal:
            return
        try:
            if state.status == "paused":
                self._states.resume_workflow(workflow_id)
            elif state.status == "pending":
                self._states.update_status(workflow_id, "running")
            self._states.fail_workflow(workflow_id, error)
        except InvalidTransition as e:
            logger.debug(f"Workflow {workflow_id} finished before it could fail: {e}")

    async def _log(self, action: str, *args: Any) -> None:
        """Write to the run log; failures are logged and otherwise ignored."""
        if self._run_log is None:
            return
        try:
            await getattr(self._run_log, action)(*args)
        except Exception:
            logger.exception(f"Run log {action} failed")
