"""
Flow Session
============
High-level interface for multi-turn conversations with one compiled flow.

Responsibilities:
  - Manage the checkpointer lifecycle via AsyncExitStack
  - Load tools from MCP servers (langchain-mcp-adapters), if configured
  - Build and hold the compiled flow graph
  - Route incoming messages to the right graph invocation:
      · Thread paused for approval → approve / reject / ask again
      · Normal message             → new run with a HumanMessage

Approval semantics:
  approve → ainvoke(None): the paused tool node runs the calls, then the
            agent runs again and folds the results into its answer
  reject  → denial ToolMessages (tagged with the agent's node id and
            toolCallsDenied) are written as if by the tool node via
            aupdate_state(as_node=...), then the thread resumes so the
            agent can acknowledge the denial
  neither → a new run; the agent asks again if it still wants the tools

Checkpointer modes:
  SQLite (default, durable)   FlowSession(build_flow, db_path="flow_checkpoints.db")
  In-memory (ephemeral)       FlowSession(build_flow, in_memory=True)
"""
import logging
import re
import sys
from contextlib import AsyncExitStack
from typing import Any, Callable

from langchain_core.messages import AIMessage, HumanMessage, ToolMessage
from langchain_mcp_adapters.client import MultiServerMCPClient

from .checkpointing import get_db_path, memory_checkpointer, sqlite_checkpointer, thread_config
from .graph import FlowGraph
from .interrupts import DENIED_KEY
from .providers import build_llm
from .tool_node import TOOL_RESPONSE_TYPE

logger = logging.getLogger(__name__)


# ── Confirmation detection ──────────────────────────────────────────────────

_YES_WORDS = frozenset({"yes", "confirm", "proceed", "ok", "okay", "sure", "go", "yep", "do it", "approve"})
_NO_WORDS  = frozenset({"no", "cancel", "stop", "abort", "nope", "don't", "dont", "reject", "deny"})


def _word_pattern(words: frozenset) -> re.Pattern:
    return re.compile(r"\b(?:" + "|".join(re.escape(w) for w in sorted(words, key=len, reverse=True)) + r")\b")


_YES_PATTERN = _word_pattern(_YES_WORDS)
_NO_PATTERN  = _word_pattern(_NO_WORDS)


def is_confirmation(message: str) -> bool | None:
    """
    Parse a yes/no reply from the user. Only whole words count, so "now"
    or "know" never read as "no".

    Returns:
        True  — confirmed
        False — rejected
        None  — ambiguous, including replies with both yes and no words
                (caller decides how to handle)
    """
    lower = message.lower().strip()
    yes = bool(_YES_PATTERN.search(lower))
    no = bool(_NO_PATTERN.search(lower))
    if yes and not no:
        return True
    if no and not yes:
        return False
    return None


def decision_for(message: str, approval: dict | None) -> bool | None:
    """Exact button labels win over keyword matching."""
    if approval:
        text = message.strip()
        if text == approval.get("approveText"):
            return True
        if text == approval.get("rejectText"):
            return False
    return is_confirmation(message)


# ── Denial helpers ──────────────────────────────────────────────────────────

def pending_tool_calls(values: dict) -> list[dict]:
    approval = (values.get("uiState") or {}).get("approval") or {}
    if approval.get("toolCalls"):
        return list(approval["toolCalls"])
    for msg in reversed(list(values.get("messages", []))):
        if isinstance(msg, AIMessage) and getattr(msg, "tool_calls", None):
            return list(msg.tool_calls)
    return []


def build_denial_messages(values: dict) -> list[ToolMessage]:
    """
    Build a ToolMessage denial for every pending tool call.

    Chat APIs require a ToolMessage for every AIMessage tool_call, even
    denied ones. The node id tag lets the paused agent treat the denials as
    the answer to its request.
    """
    approval = (values.get("uiState") or {}).get("approval") or {}
    node_id = approval.get("nodeId", "")
    return [
        ToolMessage(
            name=tc["name"],
            content=(
                f"Tool {tc['name']} call denied by user. Acknowledge that, and DONT perform "
                "further actions. Only ask if user have other questions"
            ),
            tool_call_id=tc["id"],
            additional_kwargs={"nodeId": node_id, DENIED_KEY: True, "type": TOOL_RESPONSE_TYPE},
        )
        for tc in pending_tool_calls(values)
    ]


def default_mcp_servers() -> dict:
    """The bundled demo tool server, spawned over stdio."""
    return {
        "seqflow-demo": {
            "command":   sys.executable,
            "args":      ["mcp_server.py"],
            "transport": "stdio",
        }
    }


# ── FlowSession ─────────────────────────────────────────────────────────────

class FlowSession:
    """
    Manages one compiled flow and its checkpointer.

    Args:
        build_flow:    callable (tools, model) -> FlowGraph
        model:         default chat model; build_llm() when omitted
        db_path:       SQLite checkpoint file (FLOW_CHECKPOINT_DB_PATH)
        in_memory:     use MemorySaver instead of SQLite
        mcp_servers:   MultiServerMCPClient connection map, or None for no
                       MCP tools
        should_stream: forward tokens to the flow's event sink

    Usage:
        session = FlowSession(build_demo_flow, in_memory=True)
        await session.start()
        response = await session.chat("thread-1", "Look up the refund policy")
        if response["interrupted"]:
            response = await session.decide("thread-1", approved=True)
        await session.stop()
    """

    def __init__(
        self,
        build_flow: Callable[[list, Any], FlowGraph],
        model=None,
        db_path: str | None = None,
        in_memory: bool = False,
        mcp_servers: dict | None = None,
        should_stream: bool = False,
    ):
        self._build_flow = build_flow
        self._model = model
        self._db_path = db_path
        self._in_memory = in_memory
        self._mcp_servers = mcp_servers
        self._should_stream = should_stream
        self._client: MultiServerMCPClient | None = None
        self._graph = None
        self._exit_stack = AsyncExitStack()

    async def start(self) -> None:
        # ── Checkpointer ──────────────────────────────────────────────────
        if self._in_memory:
            checkpointer = memory_checkpointer()
            logger.info("[session] Using in-memory checkpointer (ephemeral)")
        else:
            path = self._db_path or get_db_path()
            checkpointer = await self._exit_stack.enter_async_context(sqlite_checkpointer(path))
            logger.info("[session] Using SQLite checkpointer at: %s", path)

        # ── MCP tools ─────────────────────────────────────────────────────
        tools = []
        if self._mcp_servers:
            self._client = MultiServerMCPClient(self._mcp_servers)
            tools = await self._client.get_tools()

        # ── Graph ─────────────────────────────────────────────────────────
        model = self._model if self._model is not None else build_llm(streaming=self._should_stream)
        self._graph = self._build_flow(tools, model).compile(checkpointer=checkpointer)

        logger.info("[session] Ready. %d tools: %s", len(tools), [t.name for t in tools])

    async def stop(self) -> None:
        """Close the checkpointer connection (contexts exit in reverse order)."""
        await self._exit_stack.aclose()

    @property
    def graph(self):
        return self._graph

    # ── State helpers ───────────────────────────────────────────────────────

    def _config(self, session_id: str, **configurable) -> dict:
        return thread_config(session_id, should_stream=self._should_stream, **configurable)

    async def get_state(self, session_id: str):
        return await self._graph.aget_state(self._config(session_id))

    async def is_interrupted(self, session_id: str) -> bool:
        return bool((await self.get_state(session_id)).next)

    async def get_pending_action(self, session_id: str) -> dict | None:
        state = await self.get_state(session_id)
        if not state.next:
            return None
        return (state.values.get("uiState") or {}).get("approval")

    async def get_history(self, session_id: str) -> list[dict]:
        """
        Conversation history as { role: "user"|"assistant", content } dicts.

        Tool messages and tool-calling AI messages are implementation
        details of the flow, not part of the user-facing conversation.
        """
        state = await self.get_state(session_id)
        history = []
        for msg in state.values.get("messages", []):
            if isinstance(msg, HumanMessage):
                history.append({"role": "user", "content": msg.content})
            elif (
                isinstance(msg, AIMessage)
                and msg.content
                and not getattr(msg, "tool_calls", None)
            ):
                history.append({"role": "assistant", "content": msg.content})
        return history

    @staticmethod
    def _last_ai_text(messages) -> str:
        for msg in reversed(list(messages)):
            if isinstance(msg, AIMessage) and msg.content and not getattr(msg, "tool_calls", None):
                return msg.content if isinstance(msg.content, str) else str(msg.content)
        return "..."

    async def _response(self, session_id: str, result: dict) -> dict:
        state = await self.get_state(session_id)
        if state.next:
            approval = (state.values.get("uiState") or {}).get("approval") or {}
            return {
                "content": approval.get("prompt") or "Would you like me to proceed?",
                "interrupted": True,
                "pending_action": approval,
            }
        return {
            "content": self._last_ai_text((result or {}).get("messages", [])),
            "interrupted": False,
            "pending_action": None,
        }

    # ── Main chat interface ─────────────────────────────────────────────────

    async def decide(self, session_id: str, approved: bool, abort_signal=None) -> dict:
        """Approve or reject the tool calls a paused thread is waiting on."""
        config = self._config(session_id, abort_signal=abort_signal)
        state = await self.get_state(session_id)
        if not state.next:
            return {"content": "There is no pending action.", "interrupted": False, "pending_action": None}

        if approved:
            logger.info("[session] %s approved", session_id)
            result = await self._graph.ainvoke(None, config=config)
            return await self._response(session_id, result)

        denials = build_denial_messages(state.values)
        tool_node = ((state.values.get("uiState") or {}).get("approval") or {}).get("toolNode") or state.next[0]
        logger.info("[session] %s rejected %d tool call(s)", session_id, len(denials))
        await self._graph.aupdate_state(config, {"messages": denials}, as_node=tool_node)
        result = await self._graph.ainvoke(None, config=config)
        return await self._response(session_id, result)

    async def chat(self, session_id: str, message: str, uploads: list | None = None, abort_signal=None) -> dict:
        """
        Send a message to the flow and return the response.

        Returns a dict with:
            content        — the flow's reply text (or the approval prompt)
            interrupted    — True if the thread paused for approval
            pending_action — uiState.approval while paused, else None
        """
        current_state = await self.get_state(session_id)

        if current_state.next:
            approval = (current_state.values.get("uiState") or {}).get("approval")
            confirmed = decision_for(message, approval)
            if confirmed is not None:
                return await self.decide(session_id, confirmed, abort_signal=abort_signal)
            # Ambiguous reply: start a new run

        config = self._config(session_id, input=message, uploads=uploads or [], abort_signal=abort_signal)
        result = await self._graph.ainvoke({"messages": [HumanMessage(content=message)]}, config=config)
        return await self._response(session_id, result)
