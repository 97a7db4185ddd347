"""Tests for crew file loading."""

import pytest
from pydantic import ValidationError

from crewflow.loader import load_crew

CREW_YAML = """
crew:
  id: blog
  name: Blog crew
agents:
  - id: writer
    name: Writer
    system_prompt: You write blog posts.
  - id: editor
    name: Editor
workflow:
  type: sequential
  steps:
    - agent_id: writer
      recovery:
        kind: retry
        max_attempts: 2
    - agent_id: editor
      requires_approval: true
      approval_timeout: 60
"""


def test_load_crew(tmp_path):
    path = tmp_path / "crew.yaml"
    path.write_text(CREW_YAML)

    crew = load_crew(path)
    assert crew.crew.id == "blog"
    assert set(crew.profiles) == {"writer", "editor"}
    assert crew.workflow.type == "sequential"
    assert crew.workflow.steps[0].recovery.max_attempts == 2
    assert crew.workflow.steps[1].requires_approval is True
    assert crew.missing_agents() == []


def test_missing_agents_are_reported(tmp_path):
    path = tmp_path / "crew.yaml"
    path.write_text(CREW_YAML.replace("agent_id: editor", "agent_id: ghost"))
    assert load_crew(path).missing_agents() == ["ghost"]


def test_invalid_crew_file(tmp_path):
    path = tmp_path / "crew.yaml"
    path.write_text("crew:\n  id: x\n  name: y\nworkflow:\n  type: sequential\n  steps: []\n")
    with pytest.raises(ValidationError):
        load_crew(path)
