"""Step executor scenarios."""

import asyncio
import threading
import time

import pytest

from crewflow.agents import AgentProfile, CallableInvoker
from crewflow.config import CrewflowConfig
from crewflow.persistence import InMemoryRunLog
from crewflow.runtime import build_engine

PROFILES = {
    "researcher": AgentProfile(id="researcher", name="Researcher"),
    "writer": AgentProfile(id="writer", name="Writer"),
    "editor": AgentProfile(id="editor", name="Editor"),
}


class ScriptedAgents:
    """Handlers that answer from a script and remember their prompts."""

    def __init__(self, failures=None, delays=None):
        self.failures = dict(failures or {})
        self.delays = dict(delays or {})
        self.prompts = {}

    async def __call__(self, agent_id, prompt, on_chunk):
        self.prompts.setdefault(agent_id, []).append(prompt)
        await asyncio.sleep(self.delays.get(agent_id, 0))
        if self.failures.get(agent_id, 0) > 0:
            self.failures[agent_id] -= 1
            raise RuntimeError(f"{agent_id} failed")
        if on_chunk is not None:
            on_chunk(f"{agent_id}-chunk")
        return f"{agent_id} output"

    def invoker(self):
        return CallableInvoker({agent_id: self for agent_id in PROFILES})


def _engine(agents: ScriptedAgents, **kwargs):
    return build_engine(
        agents.invoker(),
        config=CrewflowConfig(),
        agents=PROFILES,
        run_log=InMemoryRunLog(),
        **kwargs,
    )


def _sequential(*steps):
    return {"type": "sequential", "steps": list(steps)}


async def _wait_for_gate(engine, workflow_id):
    for _ in range(200):
        gates = engine.approvals.get_pending_approvals(workflow_id)
        if gates:
            return gates[0]
        await asyncio.sleep(0.005)
    raise AssertionError("no approval gate opened")


async def _wait_for_status(engine, workflow_id, status):
    for _ in range(200):
        state = engine.states.get_state(workflow_id)
        if state is not None and state.status == status:
            return state
        await asyncio.sleep(0.005)
    raise AssertionError(f"workflow never reached {status}")


@pytest.mark.asyncio
async def test_sequential_with_approval():
    agents = ScriptedAgents()
    engine = _engine(agents)
    definition = _sequential(
        {"agent_id": "researcher"},
        {"agent_id": "writer", "requires_approval": True},
        {"agent_id": "editor"},
    )

    run = asyncio.create_task(
        engine.executor.execute("crew", "Crew", definition, "topic", workflow_id="wf")
    )
    gate = await _wait_for_gate(engine, "wf")
    assert gate.step_index == 1
    engine.approvals.provide_decision(gate.gate_id, {"approved": True})
    result = await run

    assert result.success is True
    assert len(result.steps) == 3
    assert engine.states.get_state("wf").status == "completed"
    assert [s.agent_name for s in result.steps] == ["Researcher", "Writer", "Editor"]
    assert "researcher output from Researcher" in agents.prompts["writer"][0]
    assert "writer output from Writer" in agents.prompts["editor"][0]

    logged = await engine.run_log.get_run("wf")
    assert logged.status == "completed"
    assert len(logged.steps) == 3


@pytest.mark.asyncio
async def test_denied_approval_fails_workflow():
    agents = ScriptedAgents()
    engine = _engine(agents)
    definition = _sequential({"agent_id": "researcher", "requires_approval": True})

    run = asyncio.create_task(
        engine.executor.execute("crew", "Crew", definition, "topic", workflow_id="wf")
    )
    gate = await _wait_for_gate(engine, "wf")
    engine.approvals.provide_decision(gate.gate_id, {"approved": False, "reason": "nope"})
    result = await run

    assert result.success is False
    assert "nope" in result.error
    assert len(result.steps) == 1
    assert result.steps[0].success is False
    assert "researcher" not in agents.prompts


@pytest.mark.asyncio
async def test_approval_timeout_fails_closed():
    engine = _engine(ScriptedAgents())
    definition = _sequential(
        {"agent_id": "researcher", "requires_approval": True, "approval_timeout": 0.02}
    )
    result = await engine.executor.execute("crew", "Crew", definition, "topic")

    assert result.success is False
    assert "timed_out" in result.error


@pytest.mark.asyncio
async def test_retry_exhaustion_fails_workflow():
    agents = ScriptedAgents(failures={"writer": 5})
    engine = _engine(agents)
    definition = _sequential({"agent_id": "researcher"}, {"agent_id": "writer"})

    result = await engine.executor.execute(
        "crew",
        "Crew",
        definition,
        "topic",
        workflow_id="wf",
        strategy={"kind": "retry", "max_attempts": 2},
    )

    assert result.success is False
    assert len(agents.prompts["writer"]) == 2
    assert [s.success for s in result.steps] == [True, False, False]
    assert [s.attempt for s in result.steps] == [1, 1, 2]
    assert [s.step_index for s in result.steps] == [0, 1, 2]
    assert engine.states.get_state("wf").status == "failed"


@pytest.mark.asyncio
async def test_retry_recovers():
    agents = ScriptedAgents(failures={"writer": 1})
    engine = _engine(agents)
    definition = _sequential(
        {"agent_id": "writer", "recovery": {"kind": "retry", "max_attempts": 3}},
        {"agent_id": "editor"},
    )

    result = await engine.executor.execute("crew", "Crew", definition, "topic")
    assert result.success is True
    assert [s.success for s in result.steps] == [False, True, True]
    assert result.steps[0].error == "writer failed"


@pytest.mark.asyncio
async def test_rollback_strategy_replays_failed_step():
    agents = ScriptedAgents(failures={"writer": 1})
    engine = _engine(agents)
    definition = _sequential(
        {"agent_id": "researcher"},
        {"agent_id": "writer", "recovery": {"kind": "rollbackToLastSuccess"}},
    )

    result = await engine.executor.execute("crew", "Crew", definition, "topic", workflow_id="wf")
    assert result.success is True
    assert [(s.definition_index, s.success) for s in result.steps] == [(0, True), (1, True)]
    assert len(agents.prompts["writer"]) == 2


@pytest.mark.asyncio
async def test_unknown_agent_recorded_before_abort():
    engine = _engine(ScriptedAgents())
    definition = _sequential({"agent_id": "ghost"})

    result = await engine.executor.execute("crew", "Crew", definition, "topic")
    assert result.success is False
    assert result.steps[0].agent_name == "Unknown Agent"
    assert result.steps[0].error == "Agent not found: ghost"
    assert "aborted" in result.error


@pytest.mark.asyncio
async def test_parallel_results_in_completion_order():
    agents = ScriptedAgents(delays={"researcher": 0.05, "writer": 0.0, "editor": 0.02})
    engine = _engine(agents)
    definition = {
        "type": "parallel",
        "steps": [{"agent_id": "researcher"}, {"agent_id": "writer"}, {"agent_id": "editor"}],
    }

    result = await engine.executor.execute("crew", "Crew", definition, "topic")
    assert result.success is True
    assert [s.agent_id for s in result.steps] == ["writer", "editor", "researcher"]
    assert [s.step_index for s in result.steps] == [0, 1, 2]
    assert all(prompts == ["topic"] for prompts in agents.prompts.values())


@pytest.mark.asyncio
async def test_parallel_failure_fails_after_siblings_finish():
    agents = ScriptedAgents(failures={"writer": 1}, delays={"editor": 0.02})
    engine = _engine(agents)
    definition = {
        "type": "parallel",
        "steps": [{"agent_id": "writer"}, {"agent_id": "editor"}],
    }

    result = await engine.executor.execute("crew", "Crew", definition, "topic")
    assert result.success is False
    assert {s.agent_id for s in result.steps} == {"writer", "editor"}


@pytest.mark.asyncio
async def test_conditional_branches():
    agents = ScriptedAgents(failures={"researcher": 1})
    engine = _engine(agents)
    definition = {
        "type": "conditional",
        "steps": [
            {"agent_id": "researcher"},
            {"agent_id": "writer", "condition": {"on": "success", "previous_step": 0}},
            {"agent_id": "editor", "condition": {"on": "failure", "previous_step": 0}},
        ],
    }
    seen = []

    result = await engine.executor.execute_with_callbacks(
        "crew", "Crew", definition, "topic", on_step=seen.append, workflow_id="wf"
    )
    assert result.success is False
    assert engine.states.get_state("wf").status == "completed"
    assert "writer" not in agents.prompts
    assert [s.agent_id for s in result.steps] == ["researcher", "researcher", "editor"]
    assert result.steps[1].error == "skipped"
    assert engine.states.get_state("wf").context["skipped_steps"] == [0]

    assert seen == result.steps
    logged = await engine.run_log.get_run("wf")
    assert [s.step_index for s in logged.steps] == [0, 1, 2]
    assert logged.steps[1].error == "skipped"


@pytest.mark.asyncio
async def test_conditional_without_failures_succeeds():
    agents = ScriptedAgents()
    engine = _engine(agents)
    definition = {
        "type": "conditional",
        "steps": [
            {"agent_id": "researcher"},
            {"agent_id": "writer", "condition": {"on": "success", "previous_step": 0}},
            {"agent_id": "editor", "condition": {"on": "failure", "previous_step": 0}},
        ],
    }

    result = await engine.executor.execute("crew", "Crew", definition, "topic")
    assert result.success is True
    assert [s.agent_id for s in result.steps] == ["researcher", "writer"]


@pytest.mark.asyncio
async def test_pause_blocks_next_step_until_resume():
    agents = ScriptedAgents(delays={"researcher": 0.05})
    engine = _engine(agents)
    definition = _sequential({"agent_id": "researcher"}, {"agent_id": "writer"})

    run = asyncio.create_task(
        engine.executor.execute("crew", "Crew", definition, "topic", workflow_id="wf")
    )
    await _wait_for_status(engine, "wf", "running")
    engine.states.pause_workflow("wf")
    await asyncio.sleep(0.1)

    assert "writer" not in agents.prompts
    assert len(engine.states.get_state("wf").step_results) == 1

    engine.states.resume_workflow("wf")
    result = await asyncio.wait_for(run, 1)
    assert result.success is True
    assert len(result.steps) == 2


@pytest.mark.asyncio
async def test_resume_from_another_thread_wakes_paused_run():
    agents = ScriptedAgents(delays={"researcher": 0.05})
    engine = _engine(agents)
    definition = _sequential({"agent_id": "researcher"}, {"agent_id": "writer"})

    run = asyncio.create_task(
        engine.executor.execute("crew", "Crew", definition, "topic", workflow_id="wf")
    )
    await _wait_for_status(engine, "wf", "running")
    engine.states.pause_workflow("wf")
    await asyncio.sleep(0.1)
    assert "writer" not in agents.prompts

    await asyncio.to_thread(engine.states.resume_workflow, "wf")
    result = await asyncio.wait_for(run, 1)
    assert result.success is True
    assert [s.agent_id for s in result.steps] == ["researcher", "writer"]


def test_paused_run_on_worker_loop_resumes_from_caller_thread():
    agents = ScriptedAgents(delays={"researcher": 0.05})
    engine = _engine(agents)
    definition = _sequential({"agent_id": "researcher"}, {"agent_id": "writer"})
    results = []

    def work():
        results.append(
            asyncio.run(
                engine.executor.execute("crew", "Crew", definition, "topic", workflow_id="wf")
            )
        )

    worker = threading.Thread(target=work)
    worker.start()
    for _ in range(200):
        state = engine.states.get_state("wf")
        if state is not None and state.status == "running":
            break
        time.sleep(0.005)
    engine.states.pause_workflow("wf")
    time.sleep(0.1)
    engine.states.resume_workflow("wf")

    worker.join(2)
    assert not worker.is_alive()
    assert results[0].success is True
    assert len(results[0].steps) == 2


@pytest.mark.asyncio
async def test_cancel_interrupts_invocation_and_clears_gates():
    agents = ScriptedAgents(delays={"researcher": 10})
    engine = _engine(agents)
    definition = _sequential({"agent_id": "researcher"})

    run = asyncio.create_task(
        engine.executor.execute("crew", "Crew", definition, "topic", workflow_id="wf")
    )
    await _wait_for_status(engine, "wf", "running")
    await asyncio.sleep(0.01)
    assert engine.executor.cancel("wf", reason="user stop") is True

    result = await asyncio.wait_for(run, 1)
    assert result.success is False
    assert result.error == "user stop"
    assert engine.executor.cancel("wf") is False


@pytest.mark.asyncio
async def test_cancel_while_waiting_for_approval():
    engine = _engine(ScriptedAgents())
    definition = _sequential({"agent_id": "researcher", "requires_approval": True})

    run = asyncio.create_task(
        engine.executor.execute("crew", "Crew", definition, "topic", workflow_id="wf")
    )
    await _wait_for_gate(engine, "wf")
    engine.executor.cancel("wf")
    result = await asyncio.wait_for(run, 1)

    assert result.error == "Workflow cancelled"
    assert engine.approvals.get_pending_approvals("wf") == []


@pytest.mark.asyncio
async def test_callbacks_receive_steps_and_chunks():
    engine = _engine(ScriptedAgents())
    definition = _sequential({"agent_id": "researcher"}, {"agent_id": "writer"})
    steps, chunks = [], []

    result = await engine.executor.execute_with_callbacks(
        "crew",
        "Crew",
        definition,
        "topic",
        on_step=steps.append,
        on_chunk=lambda index, text: chunks.append((index, text)),
    )
    assert result.success is True
    assert [s.step_index for s in steps] == [0, 1]
    assert chunks == [(0, "researcher-chunk"), (1, "writer-chunk")]


@pytest.mark.asyncio
async def test_failing_run_log_does_not_affect_run():
    class BrokenRunLog(InMemoryRunLog):
        async def record_step(self, workflow_id, result):
            raise RuntimeError("disk full")

    engine = build_engine(
        ScriptedAgents().invoker(), agents=PROFILES, run_log=BrokenRunLog()
    )
    result = await engine.executor.execute(
        "crew", "Crew", _sequential({"agent_id": "researcher"}), "topic"
    )
    assert result.success is True
