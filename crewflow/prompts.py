"""Prompt composition for workflow steps."""

from __future__ import annotations

from typing import Iterable, Optional

from .contracts import Step, StepResult


def _previous_output_prompt(result: StepResult) -> str:
    return f"If required, use the previous output: {result.output} from {result.agent_name}."


def compose_prompt(
    initial_input: str,
    step: Step,
    previous: Optional[Iterable[StepResult]] = None,
) -> str:
    """Build the prompt for ``step``.

    A fixed ``step.input`` wins. Otherwise the workflow input is followed by the
    output of every earlier successful step, oldest first, so each agent sees
    what came before it.
    """
    if step.input:
        return step.input
    parts = [initial_input]
    parts.extend(
        _previous_output_prompt(result) for result in previous or () if result.success
    )
    return "\n\n".join(part for part in parts if part)
