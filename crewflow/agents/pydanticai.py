"""Agent invoker backed by pydantic-ai agents."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Mapping, Optional

from pydantic_ai import Agent

from ..errors import AgentInvocationFailed, AgentNotFound
from .base import AgentProfile, ChunkCallback, run_cancellable

logger = logging.getLogger(__name__)


class PydanticAIInvoker:
    """Run crew steps with :class:`pydantic_ai.Agent` instances keyed by agent id.

    When an ``on_chunk`` callback is given the agent is run with
    ``run_stream`` and text deltas are forwarded as they arrive.
    """

    def __init__(self, agents: Mapping[str, Agent]) -> None:
        self._agents: Dict[str, Agent] = dict(agents)

    def profiles(self) -> List[AgentProfile]:
        """Describe the registered agents for the executor."""
        return [
            AgentProfile(id=agent_id, name=getattr(agent, "name", None) or agent_id)
            for agent_id, agent in self._agents.items()
        ]

    async def invoke(
        self,
        agent_id: str,
        prompt: str,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFound(agent_id)
        logger.debug(f"Invoking pydantic-ai agent {agent_id}")
        try:
            return await run_cancellable(
                agent_id, self._run(agent, prompt, on_chunk), cancel_event
            )
        except AgentInvocationFailed:
            raise
        except Exception as e:
            raise AgentInvocationFailed(agent_id, str(e) or type(e).__name__, cause=e) from e

    async def _run(
        self, agent: Agent, prompt: str, on_chunk: Optional[ChunkCallback]
    ) -> str:
        if on_chunk is None:
            result = await agent.run(prompt)
            return str(result.output)

        chunks: List[str] = []
        async with agent.run_stream(prompt) as result:
            async for delta in result.stream_text(delta=True):
                chunks.append(delta)
                on_chunk(delta)
        return "".join(chunks)
