"""
Routing Functions
=================
Pure functions that read FlowState and return a destination node name.
LangGraph calls these at conditional edges to decide where execution goes
next.

Graph routing map:
  agent (approval)  → route_after_agent     → "tool_<id>" | next node
  condition         → route_after_condition → branch chosen by the node
"""
from typing import Callable, Mapping

from langchain_core.messages import AIMessage
from langgraph.graph import END

from .interrupts import InterruptEnvelope, InterruptKind


def route_after_agent(state: Mapping, tool_node: str, next_node: str = END) -> str:
    """
    After an approval agent runs:
      - its message is an interrupt request → tool_node (graph pauses before it)
      - anything else                       → next_node
    """
    messages = state.get("messages") or []
    if not messages:
        return next_node

    last = messages[-1]
    envelope = InterruptEnvelope.from_message(last)
    if (
        isinstance(last, AIMessage)
        and last.tool_calls
        and envelope is not None
        and envelope.kind is InterruptKind.REQUEST
    ):
        return tool_node
    return next_node


def route_after_condition(state: Mapping, node_id: str, default: str) -> str:
    """Read the branch the condition node recorded in flow["conditions"]."""
    conditions = (state.get("flow") or {}).get("conditions") or {}
    return conditions.get(node_id) or default


def agent_router(tool_node: str, next_node: str = END) -> Callable[[Mapping], str]:
    def route(state: Mapping) -> str:
        return route_after_agent(state, tool_node, next_node)
    route.__name__ = f"route_{tool_node}"
    return route


def condition_router(node_id: str, default: str) -> Callable[[Mapping], str]:
    def route(state: Mapping) -> str:
        return route_after_condition(state, node_id, default)
    route.__name__ = f"route_{node_id}"
    return route
