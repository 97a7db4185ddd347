"""Agent-invocation adapters."""

from __future__ import annotations

from .base import AgentInvoker, AgentProfile, CallableInvoker, ChunkCallback, run_cancellable
from .ollama import OllamaInvoker
from .pydanticai import PydanticAIInvoker

__all__ = [
    "AgentInvoker",
    "AgentProfile",
    "CallableInvoker",
    "ChunkCallback",
    "OllamaInvoker",
    "PydanticAIInvoker",
    "run_cancellable",
]
