"""
Tool Execution
==============
Runs the tool calls an agent's AIMessage proposes and turns each result
into a ToolMessage.

Tools may append structured side data to their text output after a
sentinel marker:

    "The answer is 42"
    "\\n\\n----SOURCE_DOCUMENTS----\\n\\n" + json.dumps([{pageContent, metadata}])
    "\\n\\n----ARTIFACTS----\\n\\n"        + json.dumps([...])

The markers may appear in either order. Each block is parsed as JSON on its
own; a block that fails to parse is logged and treated as empty, without
affecting the other block or the text.

Used twice:
  - inline, by an agent running its own ReAct loop (execute_tool_calls)
  - as a graph node behind an approval interrupt (ToolExecutionNode)
"""
import asyncio
import json
import logging
from typing import Any, Mapping, Sequence

from langchain_core.messages import AIMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool

from .errors import FlowError, ToolExecutionError, ToolNotFoundError
from .events import check_abort
from .nodes import NodeKind
from .resolver import FlowContext

logger = logging.getLogger(__name__)

SOURCE_DOCUMENTS_PREFIX = "\n\n----SOURCE_DOCUMENTS----\n\n"
ARTIFACTS_PREFIX = "\n\n----ARTIFACTS----\n\n"

TOOL_RESPONSE_TYPE = "toolResponse"


# ── Output parsing ──────────────────────────────────────────────────────────

def _parse_block(raw: str | None, label: str) -> list:
    if raw is None:
        return []
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        logger.warning("[tools] Could not parse %s block: %s", label, exc)
        return []
    if parsed is None:
        return []
    return parsed if isinstance(parsed, list) else [parsed]


def split_sentinel_blocks(output: str) -> tuple[str, list, list]:
    """Return (text, source_documents, artifacts) for a raw tool output."""
    found = sorted(
        (output.index(prefix), prefix)
        for prefix in (SOURCE_DOCUMENTS_PREFIX, ARTIFACTS_PREFIX)
        if prefix in output
    )
    if not found:
        return output, [], []

    blocks = {}
    for i, (start, prefix) in enumerate(found):
        end = found[i + 1][0] if i + 1 < len(found) else len(output)
        blocks[prefix] = output[start + len(prefix):end]

    return (
        output[:found[0][0]],
        _parse_block(blocks.get(SOURCE_DOCUMENTS_PREFIX), "source documents"),
        _parse_block(blocks.get(ARTIFACTS_PREFIX), "artifacts"),
    )


def _output_text(output: Any) -> str:
    if isinstance(output, str):
        return output
    if isinstance(output, list) and output and all(
        isinstance(item, str) or (isinstance(item, Mapping) and item.get("type") == "text")
        for item in output
    ):
        return "\n".join(item if isinstance(item, str) else str(item.get("text", "")) for item in output)
    return json.dumps(output, default=str)


# ── Execution ───────────────────────────────────────────────────────────────

def find_tool(name: str, tools: Sequence[BaseTool]) -> BaseTool:
    for tool in tools:
        if tool.name == name:
            return tool
    raise ToolNotFoundError(name)


def _tool_config(config: Mapping | None, flow_context: dict) -> dict:
    config = dict(config or {})
    config["configurable"] = {**(config.get("configurable") or {}), "flow_context": flow_context}
    return config


async def _run_call(
    call: Mapping,
    tool: BaseTool,
    node_id: str,
    flow_context: dict,
    config: Mapping | None,
    event_sink: Any,
    chat_id: str,
) -> ToolMessage:
    check_abort(config, event_sink, chat_id)

    set_flow_context = getattr(tool, "set_flow_context", None)
    if callable(set_flow_context):
        set_flow_context(dict(flow_context))

    args = call.get("args") or {}
    logger.info("[tools] Calling %s args=%s", tool.name, args)
    try:
        raw = await tool.ainvoke(args, config=_tool_config(config, flow_context))
    except FlowError:
        raise
    except Exception as exc:
        raise ToolExecutionError(f"Tool execution failed: {exc}") from exc

    content, source_documents, artifacts = split_sentinel_blocks(_output_text(raw))

    return ToolMessage(
        name=tool.name,
        content=content,
        tool_call_id=call.get("id") or "",
        additional_kwargs={
            "nodeId": node_id,
            "args": args,
            "usedTools": [{"tool": tool.name, "toolInput": args, "toolOutput": content}],
            "sourceDocuments": source_documents,
            "artifacts": artifacts,
            "type": TOOL_RESPONSE_TYPE,
        },
    )


async def execute_tool_calls(
    tool_calls: Sequence[Mapping],
    tools: Sequence[BaseTool],
    context: FlowContext,
    node_id: str,
    config: Mapping | None = None,
    event_sink: Any = None,
) -> list[ToolMessage]:
    """
    Execute every call concurrently. Results come back in call order.

    All tool names are looked up before anything runs, so an unknown tool
    fails the batch without side effects.
    """
    if not tool_calls:
        return []

    check_abort(config, event_sink, context.chat_id)
    resolved = [(call, find_tool(call.get("name", ""), tools)) for call in tool_calls]
    flow_context = context.as_tool_context()

    return list(await asyncio.gather(*(
        _run_call(call, tool, node_id, flow_context, config, event_sink, context.chat_id)
        for call, tool in resolved
    )))


def collect_records(messages: Sequence[ToolMessage]) -> tuple[list, list, list]:
    """Flatten (usedTools, sourceDocuments, artifacts) across tool messages."""
    used_tools, source_documents, artifacts = [], [], []
    for msg in messages:
        kwargs = msg.additional_kwargs or {}
        used_tools.extend(kwargs.get("usedTools") or [])
        source_documents.extend(kwargs.get("sourceDocuments") or [])
        artifacts.extend(kwargs.get("artifacts") or [])
    return used_tools, source_documents, artifacts


def accumulate_flow(flow: Mapping | None, used_tools: list, source_documents: list, artifacts: list) -> dict:
    flow = flow or {}
    return {
        "usedTools":       [*(flow.get("usedTools") or []), *used_tools],
        "sourceDocuments": [*(flow.get("sourceDocuments") or []), *source_documents],
        "artifacts":       [*(flow.get("artifacts") or []), *artifacts],
    }


# ── Graph node ──────────────────────────────────────────────────────────────

class ToolExecutionNode:
    """
    Graph node that executes the tool calls of the preceding agent message.

    Tool messages are tagged with the owning agent's node id, which is how
    that agent recognises the results when it runs again after approval.
    The records only accumulate in flow state; the end node streams them.
    """

    kind = NodeKind.TOOL

    def __init__(
        self,
        node_id: str,
        agent_node_id: str,
        tools: Sequence[BaseTool],
        event_sink: Any = None,
    ):
        self.node_id = node_id
        self.agent_node_id = agent_node_id
        self.tools = list(tools)
        self.event_sink = event_sink

    async def __call__(self, state: Mapping, config: RunnableConfig | None = None) -> dict:
        return await self.execute(state, config)

    async def execute(self, state: Mapping, config: RunnableConfig | None = None) -> dict:
        messages = list(state.get("messages") or [])
        last = messages[-1] if messages else None
        if not isinstance(last, AIMessage):
            raise ToolExecutionError("ToolNode only accepts AIMessages as input.")

        context = FlowContext.from_run(state, config)
        tool_messages = await execute_tool_calls(
            last.tool_calls, self.tools, context, self.agent_node_id, config, self.event_sink,
        )

        used_tools, source_documents, artifacts = collect_records(tool_messages)

        logger.info("[tools] %s ran %d tool call(s)", self.node_id, len(tool_messages))
        return {
            "messages": tool_messages,
            "flow": accumulate_flow(state.get("flow"), used_tools, source_documents, artifacts),
        }
