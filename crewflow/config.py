from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_AGENT_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_OLLAMA_URL,
    DEFAULT_SNAPSHOT_LIMIT,
)


class EngineConfig(BaseModel):
    """Settings for the orchestration engine."""

    snapshot_limit: int = Field(default=DEFAULT_SNAPSHOT_LIMIT, ge=1)
    approval_timeout: Optional[float] = Field(
        default=None, gt=0, description="Default approval timeout in seconds"
    )
    default_recovery: Optional[
        Literal["retry", "skip", "rollbackToLastSuccess", "abort"]
    ] = Field(default=None, description="Unset picks abort, or skip for conditional workflows")
    default_max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    retry_backoff: float = Field(default=0.0, ge=0)


class OllamaConfig(BaseModel):
    """Configuration for the Ollama agent invoker."""

    url: str = DEFAULT_OLLAMA_URL
    model: str = "llama3"
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    timeout: float = DEFAULT_AGENT_TIMEOUT


class CrewflowConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    ollama: OllamaConfig = OllamaConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> CrewflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CREWFLOW_CONFIG env
            variable or 'crewflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("CREWFLOW_CONFIG", "crewflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CrewflowConfig(**data)
    else:
        config = CrewflowConfig()

    env_db_url = os.getenv("CREWFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
