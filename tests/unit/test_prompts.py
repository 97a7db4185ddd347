from crewflow.contracts import Step, StepResult
from crewflow.prompts import compose_prompt


def _result(output: str, success: bool = True) -> StepResult:
    return StepResult(
        step_index=0,
        definition_index=0,
        agent_id="a",
        agent_name="Researcher",
        output=output,
        success=success,
    )


def test_fixed_input_wins():
    step = Step(agent_id="a", step_index=1, input="Only this")
    assert compose_prompt("topic", step, [_result("notes")]) == "Only this"


def test_previous_successful_outputs_are_appended():
    step = Step(agent_id="a", step_index=2)
    prompt = compose_prompt("topic", step, [_result("notes"), _result("", success=False)])
    assert prompt.startswith("topic")
    assert "use the previous output: notes from Researcher" in prompt
    assert prompt.count("previous output") == 1


def test_first_step_sees_input_only():
    assert compose_prompt("topic", Step(agent_id="a", step_index=0)) == "topic"
