"""
pytest configuration for the seqflow test suite.

Sets PYTHONPATH so tests can import from the project root.
Prevents DSPy and LangChain from making real LLM calls during unit tests:
every model in the suite is a ScriptedChatModel that replays canned
AIMessages and records the prompts it was sent.

asyncio_mode = "auto" (set in pyproject.toml) means all async test functions
are automatically collected as asyncio tests — no @pytest.mark.asyncio
needed on individual tests.
"""
import json
import os
import sys
import uuid
from typing import Any, Iterator

import pytest
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage
from langchain_core.outputs import ChatGeneration, ChatGenerationChunk, ChatResult
from langchain_core.tools import tool
from pydantic import Field

# Ensure the project root is on sys.path so `import seqflow` and `import mcp_server` work
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Tests use scripted models and should not need real keys
os.environ.setdefault("GROQ_API_KEY", "test-key")
os.environ.setdefault("LLM_PROVIDER", "groq")


# ── Scripted chat model ─────────────────────────────────────────────────────

class ScriptedChatModel(BaseChatModel):
    """
    Replays `responses` in order (strings become AIMessages). Once the
    script runs out it answers with an empty AIMessage.

    `received` holds the message list of every call; `bound_tools` the
    tools of the last bind_tools() call.
    """

    responses: list = Field(default_factory=list)
    received: list = Field(default_factory=list)
    bound_tools: list = Field(default_factory=list)

    @property
    def _llm_type(self) -> str:
        return "scripted"

    def bind_tools(self, tools, **kwargs):
        self.bound_tools = list(tools)
        return self

    def _next(self, messages: list[BaseMessage]) -> AIMessage:
        self.received.append(list(messages))
        if not self.responses:
            return AIMessage(content="")
        response = self.responses.pop(0)
        return AIMessage(content=response) if isinstance(response, str) else response

    def _generate(self, messages, stop=None, run_manager=None, **kwargs: Any) -> ChatResult:
        return ChatResult(generations=[ChatGeneration(message=self._next(messages))])

    def _stream(self, messages, stop=None, run_manager=None, **kwargs: Any) -> Iterator[ChatGenerationChunk]:
        message = self._next(messages)
        words = message.content.split(" ") if message.content else []
        for i, word in enumerate(words):
            yield ChatGenerationChunk(message=AIMessageChunk(content=word if i == 0 else " " + word))
        if message.tool_calls:
            yield ChatGenerationChunk(message=AIMessageChunk(
                content="",
                tool_call_chunks=[
                    {"name": tc["name"], "args": json.dumps(tc["args"]), "id": tc["id"], "index": i}
                    for i, tc in enumerate(message.tool_calls)
                ],
            ))


def tool_call(name: str, call_id: str | None = None, **args) -> dict:
    return {"name": name, "args": args, "id": call_id or f"call_{uuid.uuid4().hex[:12]}", "type": "tool_call"}


def calls(*tool_calls: dict, content: str = "") -> AIMessage:
    """An AIMessage proposing the given tool calls."""
    return AIMessage(content=content, tool_calls=list(tool_calls))


# ── Stub tools ──────────────────────────────────────────────────────────────

@tool
def echo(text: str) -> str:
    """Echo the text back."""
    return f"echo: {text}"


@tool
def search_docs(query: str) -> str:
    """Search documents; returns text plus source documents."""
    docs = [{"pageContent": f"about {query}", "metadata": {"source": "kb"}}]
    return f"found {query}" + "\n\n----SOURCE_DOCUMENTS----\n\n" + json.dumps(docs)


@tool
def broken_artifacts() -> str:
    """Returns a malformed artifacts block."""
    return "chart ready" + "\n\n----ARTIFACTS----\n\n" + "{not json"


@tool
def explode(reason: str) -> str:
    """Always fails."""
    raise RuntimeError(f"boom: {reason}")


# ── Fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture
def session_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def scripted():
    """Factory: scripted("hi", calls(...)) → ScriptedChatModel."""
    def make(*responses) -> ScriptedChatModel:
        return ScriptedChatModel(responses=list(responses))
    return make


@pytest.fixture
def stub_tools() -> list:
    return [echo, search_docs, broken_artifacts, explode]
