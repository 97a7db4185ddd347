"""Agent-invocation collaborator contract."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable, Dict, Optional, Protocol, TypeVar

from pydantic import BaseModel, Field

from ..errors import AgentInvocationFailed, AgentNotFound, InvocationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChunkCallback = Callable[[str], None]


class AgentProfile(BaseModel):
    """Identity and prompt settings of an agent taking part in a crew."""

    id: str
    name: str
    system_prompt: str = ""
    model: Optional[str] = None
    role: Optional[str] = None
    description: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


class AgentInvoker(Protocol):
    """Anything able to run a prompt against an agent and return its text."""

    async def invoke(
        self,
        agent_id: str,
        prompt: str,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """Return the agent's answer; stream partial text to ``on_chunk``.

        Raises:
            AgentInvocationFailed: If the agent is unknown or the call fails.
        """


async def run_cancellable(
    agent_id: str, coro: Awaitable[T], cancel_event: Optional[asyncio.Event] = None
) -> T:
    """Await ``coro`` unless ``cancel_event`` fires first.

    Raises:
        InvocationCancelled: If the event was set before the call finished.
    """
    if cancel_event is None:
        return await coro
    task = asyncio.ensure_future(coro)
    if cancel_event.is_set():
        task.cancel()
        raise InvocationCancelled(agent_id)

    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    logger.info(f"Invocation of agent {agent_id} cancelled")
    raise InvocationCancelled(agent_id)


class CallableInvoker:
    """Adapt plain ``async def fn(agent_id, prompt, on_chunk)`` callables.

    Handy for in-process agents and for tests.
    """

    def __init__(
        self,
        handlers: Dict[str, Callable[..., Awaitable[str]]],
    ) -> None:
        self._handlers = dict(handlers)

    async def invoke(
        self,
        agent_id: str,
        prompt: str,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        handler = self._handlers.get(agent_id)
        if handler is None:
            raise AgentNotFound(agent_id)
        try:
            return await run_cancellable(
                agent_id, handler(agent_id, prompt, on_chunk), cancel_event
            )
        except AgentInvocationFailed:
            raise
        except Exception as e:
            raise AgentInvocationFailed(agent_id, str(e) or type(e).__name__, cause=e) from e
