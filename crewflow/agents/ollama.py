"""Agent invoker for a local Ollama server."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional

import httpx

from ..config import OllamaConfig
from ..errors import AgentInvocationFailed, AgentNotFound
from .base import AgentProfile, ChunkCallback, run_cancellable

logger = logging.getLogger(__name__)


class OllamaInvoker:
    """Call ``/api/generate`` with each agent's system prompt and model.

    Responses are streamed line by line when an ``on_chunk`` callback is given.
    """

    def __init__(
        self,
        profiles: Mapping[str, AgentProfile] | Iterable[AgentProfile],
        config: Optional[OllamaConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if isinstance(profiles, Mapping):
            self._profiles: Dict[str, AgentProfile] = dict(profiles)
        else:
            self._profiles = {profile.id: profile for profile in profiles}
        self._config = config or OllamaConfig()
        self._client = client

    @property
    def endpoint(self) -> str:
        return f"{self._config.url.rstrip('/')}/api/generate"

    def build_payload(self, profile: AgentProfile, prompt: str, stream: bool) -> Dict[str, Any]:
        options = {
            "temperature": self._config.temperature,
            "top_p": self._config.top_p,
            "num_predict": self._config.max_tokens,
        }
        return {
            "model": profile.model or self._config.model,
            "prompt": prompt,
            "system": profile.system_prompt,
            "stream": stream,
            "options": {k: v for k, v in options.items() if v is not None},
        }

    async def invoke(
        self,
        agent_id: str,
        prompt: str,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        profile = self._profiles.get(agent_id)
        if profile is None:
            raise AgentNotFound(agent_id)
        payload = self.build_payload(profile, prompt, stream=on_chunk is not None)
        logger.debug(f"Calling Ollama model {payload['model']} for agent {agent_id}")
        try:
            return await run_cancellable(
                agent_id, self._generate(agent_id, payload, on_chunk), cancel_event
            )
        except httpx.TimeoutException as e:
            raise AgentInvocationFailed(agent_id, "Request timeout", cause=e) from e
        except httpx.HTTPStatusError as e:
            raise AgentInvocationFailed(
                agent_id, f"Ollama API error: {e.response.status_code}", cause=e
            ) from e
        except httpx.HTTPError as e:
            raise AgentInvocationFailed(agent_id, f"Ollama request failed: {e}", cause=e) from e

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self._config.timeout) as client:
            yield client

    async def _generate(
        self, agent_id: str, payload: Dict[str, Any], on_chunk: Optional[ChunkCallback]
    ) -> str:
        async with self._session() as client:
            if not payload["stream"]:
                response = await client.post(self.endpoint, json=payload)
                response.raise_for_status()
                return self._check(agent_id, response.json()).get("response", "")

            parts: List[str] = []
            async with client.stream("POST", self.endpoint, json=payload) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    data = self._check(agent_id, json.loads(line))
                    chunk = data.get("response", "")
                    if chunk:
                        parts.append(chunk)
                        on_chunk(chunk)
                    if data.get("done"):
                        break
            return "".join(parts)

    @staticmethod
    def _check(agent_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if data.get("error"):
            raise AgentInvocationFailed(agent_id, f"Ollama error: {data['error']}")
        return data
