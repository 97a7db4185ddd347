"""Push-channel view of a workflow run.

:func:`stream_execution` turns :meth:`StepExecutor.execute_with_callbacks` into
an async iterator of :class:`WorkflowEvent` objects, and :func:`format_sse`
frames each one as a server-sent event.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, AsyncIterator, Dict, Literal, Optional

from pydantic import BaseModel, Field

from .contracts import WorkflowDefinition
from .execute import StepExecutor

logger = logging.getLogger(__name__)

EventName = Literal["run", "step", "chunk", "complete", "error"]


class WorkflowEvent(BaseModel):
    event: EventName
    data: Dict[str, Any] = Field(default_factory=dict)


def format_sse(event: WorkflowEvent) -> str:
    """Frame ``event`` as ``event: <name>\\ndata: <json>\\n\\n``."""
    return f"event: {event.event}\ndata: {json.dumps(event.data, default=str)}\n\n"


async def stream_execution(
    executor: StepExecutor,
    crew_id: str,
    crew_name: str,
    definition: WorkflowDefinition | dict,
    input: str,
    workflow_id: Optional[str] = None,
    strategy: Any = None,
    include_chunks: bool = False,
) -> AsyncIterator[WorkflowEvent]:
    """Execute a workflow and yield its events as they happen.

    The stream opens with a ``run`` event, carries one ``step`` event per
    recorded step result (plus ``chunk`` events when ``include_chunks`` is set)
    and ends with exactly one ``complete`` or ``error`` event.
    """
    workflow_id = workflow_id or str(uuid.uuid4())
    queue: asyncio.Queue[Optional[WorkflowEvent]] = asyncio.Queue()

    def on_step(result) -> None:
        queue.put_nowait(WorkflowEvent(event="step", data=result.model_dump(mode="json")))

    def on_chunk(step_index: int, text: str) -> None:
        queue.put_nowait(
            WorkflowEvent(event="chunk", data={"step_index": step_index, "text": text})
        )

    async def run() -> None:
        try:
            result = await executor.execute_with_callbacks(
                crew_id,
                crew_name,
                definition,
                input,
                on_step=on_step,
                on_chunk=on_chunk if include_chunks else None,
                workflow_id=workflow_id,
                strategy=strategy,
            )
        except Exception as e:
            logger.exception(f"Streaming run {workflow_id} failed")
            queue.put_nowait(WorkflowEvent(event="error", data={"error": str(e)}))
        else:
            data = result.model_dump(mode="json", exclude={"steps"})
            if result.success:
                queue.put_nowait(WorkflowEvent(event="complete", data=data))
            else:
                queue.put_nowait(WorkflowEvent(event="error", data=data))
        finally:
            queue.put_nowait(None)

    yield WorkflowEvent(
        event="run",
        data={"workflow_id": workflow_id, "crew_id": crew_id, "crew_name": crew_name},
    )
    task = asyncio.create_task(run())
    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            yield event
    finally:
        if not task.done():
            executor.cancel(workflow_id, reason="Stream closed")
            await asyncio.gather(task, return_exceptions=True)
