"""Load crew definitions from YAML files."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List

import yaml
from pydantic import BaseModel, Field

from .agents.base import AgentProfile
from .contracts import WorkflowDefinition


class CrewInfo(BaseModel):
    id: str
    name: str


class CrewFile(BaseModel):
    """A crew, its agents and the workflow they run."""

    crew: CrewInfo
    agents: List[AgentProfile] = Field(default_factory=list)
    workflow: WorkflowDefinition

    @property
    def profiles(self) -> Dict[str, AgentProfile]:
        return {agent.id: agent for agent in self.agents}

    def missing_agents(self) -> List[str]:
        """Agent ids referenced by the workflow but not declared in the crew."""
        known = self.profiles
        missing: List[str] = []
        for step in self.workflow.steps:
            if step.agent_id not in known and step.agent_id not in missing:
                missing.append(step.agent_id)
        return missing


def load_crew(path: str | Path) -> CrewFile:
    """Read and validate a crew YAML file.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        pydantic.ValidationError: If the file does not describe a valid crew.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return CrewFile.model_validate(data)
