"""Tests for the workflow data model."""

import pytest
from pydantic import ValidationError

from crewflow.constants import CONTEXT_LAST_OUTCOME, CONTEXT_STEP_OUTCOMES
from crewflow.contracts import (
    ConditionalWorkflow,
    ParallelWorkflow,
    RetryStrategy,
    StepCondition,
    parse_definition,
    parse_strategy,
)


def test_definition_is_tagged_by_type():
    definition = parse_definition(
        {"type": "parallel", "steps": [{"agent_id": "a"}, {"agent_id": "b"}]}
    )
    assert isinstance(definition, ParallelWorkflow)
    assert [s.step_index for s in definition.steps] == [0, 1]


def test_condition_only_on_conditional_steps():
    definition = parse_definition(
        {
            "type": "conditional",
            "steps": [
                {"agent_id": "a"},
                {"agent_id": "b", "condition": {"on": "failure", "previous_step": 0}},
            ],
        }
    )
    assert isinstance(definition, ConditionalWorkflow)
    assert definition.steps[1].condition.on == "failure"

    with pytest.raises(ValidationError):
        parse_definition(
            {"type": "sequential", "steps": [{"agent_id": "a", "condition": {"on": "always"}}]}
        )


def test_definition_validation_errors():
    with pytest.raises(ValidationError):
        parse_definition({"type": "sequential", "steps": []})
    with pytest.raises(ValidationError):
        parse_definition({"type": "loop", "steps": [{"agent_id": "a"}]})
    with pytest.raises(ValidationError):
        parse_definition({"type": "sequential", "steps": [{"agent_id": "a", "step_index": 3}]})


def test_definitions_are_immutable():
    definition = parse_definition({"type": "sequential", "steps": [{"agent_id": "a"}]})
    with pytest.raises(ValidationError):
        definition.steps[0].agent_id = "b"


def test_parse_strategy():
    strategy = parse_strategy({"kind": "retry", "max_attempts": 2})
    assert isinstance(strategy, RetryStrategy)
    assert strategy.max_attempts == 2
    with pytest.raises(ValidationError):
        parse_strategy({"kind": "retry", "max_attempts": 0})
    with pytest.raises(ValidationError):
        parse_strategy({"kind": "pray"})


def test_step_condition_evaluation():
    context = {
        CONTEXT_STEP_OUTCOMES: {"0": True, "1": False},
        CONTEXT_LAST_OUTCOME: False,
        "approved": "yes",
    }
    assert StepCondition(on="always").evaluate(context)
    assert StepCondition(on="failure").evaluate(context)
    assert not StepCondition(on="success").evaluate(context)
    assert StepCondition(on="success", previous_step=0).evaluate(context)
    assert not StepCondition(on="success", previous_step=5).evaluate(context)
    assert StepCondition(context_key="approved", equals="yes").evaluate(context)
    assert not StepCondition(context_key="approved", equals="no").evaluate(context)
    assert not StepCondition(context_key="missing").evaluate(context)
    assert context[CONTEXT_STEP_OUTCOMES] == {"0": True, "1": False}
