"""Tests for the agent invokers."""

import asyncio
import json

import httpx
import pytest
from pydantic_ai import Agent
from pydantic_ai.models.test import TestModel

from crewflow.agents import AgentProfile, CallableInvoker, OllamaInvoker, PydanticAIInvoker
from crewflow.agents.base import run_cancellable
from crewflow.config import OllamaConfig
from crewflow.errors import AgentInvocationFailed, AgentNotFound, InvocationCancelled

PROFILES = [
    AgentProfile(id="writer", name="Writer", system_prompt="You write."),
    AgentProfile(id="critic", name="Critic", system_prompt="You judge.", model="phi3"),
]


def _ollama(handler, **config) -> OllamaInvoker:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaInvoker(PROFILES, config=OllamaConfig(**config), client=client)


@pytest.mark.asyncio
async def test_ollama_generate_payload_and_response():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"response": "A poem", "done": True})

    invoker = _ollama(handler, url="http://ollama:11434/", temperature=0.3, max_tokens=64)
    output = await invoker.invoke("critic", "Judge this")

    assert output == "A poem"
    assert seen["url"] == "http://ollama:11434/api/generate"
    body = seen["body"]
    assert body["model"] == "phi3"
    assert body["system"] == "You judge."
    assert body["prompt"] == "Judge this"
    assert body["stream"] is False
    assert body["options"] == {"temperature": 0.3, "num_predict": 64}


@pytest.mark.asyncio
async def test_ollama_streams_chunks():
    lines = [
        {"response": "Hel", "done": False},
        {"response": "lo", "done": False},
        {"response": "", "done": True},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        content = "\n".join(json.dumps(line) for line in lines) + "\n"
        return httpx.Response(200, content=content.encode())

    chunks = []
    output = await _ollama(handler).invoke("writer", "Hi", on_chunk=chunks.append)
    assert output == "Hello"
    assert chunks == ["Hel", "lo"]


@pytest.mark.asyncio
async def test_ollama_error_mapping():
    def server_error(request):
        return httpx.Response(500, json={"error": "down"})

    def timeout(request):
        raise httpx.ReadTimeout("too slow", request=request)

    def model_error(request):
        return httpx.Response(200, json={"error": "model not found"})

    with pytest.raises(AgentInvocationFailed, match="Ollama API error: 500"):
        await _ollama(server_error).invoke("writer", "Hi")
    with pytest.raises(AgentInvocationFailed, match="Request timeout"):
        await _ollama(timeout).invoke("writer", "Hi")
    with pytest.raises(AgentInvocationFailed, match="Ollama error: model not found"):
        await _ollama(model_error).invoke("writer", "Hi")
    with pytest.raises(AgentNotFound):
        await _ollama(server_error).invoke("ghost", "Hi")


@pytest.mark.asyncio
async def test_pydantic_ai_invoker_runs_agent():
    agent = Agent(TestModel(custom_output_text="hello world"), name="Helper")
    invoker = PydanticAIInvoker({"helper": agent})

    assert await invoker.invoke("helper", "Say hi") == "hello world"
    assert invoker.profiles()[0].name == "Helper"
    with pytest.raises(AgentNotFound):
        await invoker.invoke("missing", "Say hi")


@pytest.mark.asyncio
async def test_pydantic_ai_invoker_streams_text():
    agent = Agent(TestModel(custom_output_text="hello world"))
    invoker = PydanticAIInvoker({"helper": agent})

    chunks = []
    output = await invoker.invoke("helper", "Say hi", on_chunk=chunks.append)
    assert output == "hello world"
    assert "".join(chunks) == "hello world"


@pytest.mark.asyncio
async def test_callable_invoker_wraps_errors():
    async def broken(agent_id, prompt, on_chunk):
        raise RuntimeError("exploded")

    invoker = CallableInvoker({"broken": broken})
    with pytest.raises(AgentInvocationFailed, match="exploded") as info:
        await invoker.invoke("broken", "x")
    assert isinstance(info.value.cause, RuntimeError)


@pytest.mark.asyncio
async def test_run_cancellable_interrupts_call():
    cancel_event = asyncio.Event()
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.sleep(10)
        return "late"

    task = asyncio.create_task(run_cancellable("writer", slow(), cancel_event))
    await started.wait()
    cancel_event.set()
    with pytest.raises(InvocationCancelled):
        await asyncio.wait_for(task, 1)
