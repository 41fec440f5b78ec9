"""
Flow Nodes
==========
The non-agent node kinds of a sequential flow.

  StartNode      — runs first; records run metadata in `flow`, resets the
                   per-run accumulators and seeds custom-state defaults
  ConditionNode  — picks a branch from ordered rules; the choice is written
                   to flow["conditions"][node_id] and read back by
                   routing.route_after_condition
  EndNode        — streams the run's records, then stream_end

Every node kind exposes `async execute(state, config) -> partial update`;
AgentNode (agent_node.py) and ToolExecutionNode (tool_node.py) complete the
closed set listed in NodeKind.
"""
import json
import logging
import math
import re
from enum import Enum
from typing import Any, Mapping, Sequence

from langchain_core.messages import HumanMessage
from langchain_core.runnables import RunnableConfig
from pydantic import BaseModel, ConfigDict

from .collaborators import VariableResolver
from .events import emit
from .prompts import extract_output_text
from .resolver import FlowContext, resolve_reference
from .state import StateField, state_defaults

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "End"


class NodeKind(str, Enum):
    START = "start"
    AGENT = "agent"
    TOOL = "tool"
    CONDITION = "condition"
    END = "end"


# ── Start ───────────────────────────────────────────────────────────────────

class StartNode:
    kind = NodeKind.START

    def __init__(self, node_id: str = "start", state_fields: Sequence[StateField] = (), chatflow_id: str = ""):
        self.node_id = node_id
        self.state_fields = list(state_fields)
        self.chatflow_id = chatflow_id

    async def execute(self, state: Mapping, config: RunnableConfig | None = None) -> dict:
        configurable = (config or {}).get("configurable") or {}
        session_id = configurable.get("thread_id") or ""

        run_input = configurable.get("input")
        if run_input is None:
            last_human = next(
                (m for m in reversed(list(state.get("messages") or [])) if isinstance(m, HumanMessage)),
                None,
            )
            run_input = extract_output_text(last_human.content) if last_human is not None else ""

        update = {
            "flow": {
                "sessionId":       session_id,
                "chatId":          configurable.get("chat_id") or session_id,
                "chatflowId":      configurable.get("chatflow_id") or self.chatflow_id,
                "input":           run_input,
                "usedTools":       [],
                "sourceDocuments": [],
                "artifacts":       [],
                "conditions":      {},
            }
        }

        current = state.get("state") or {}
        seeds = {k: v for k, v in state_defaults(self.state_fields).items() if k not in current}
        if seeds:
            update["state"] = seeds

        logger.info("[start] session=%s input=%r", session_id, str(run_input)[:80])
        return update


# ── End ─────────────────────────────────────────────────────────────────────

class EndNode:
    kind = NodeKind.END

    def __init__(self, node_id: str = "end", event_sink: Any = None):
        self.node_id = node_id
        self.event_sink = event_sink

    async def execute(self, state: Mapping, config: RunnableConfig | None = None) -> dict:
        flow = state.get("flow") or {}
        chat_id = flow.get("chatId") or ((config or {}).get("configurable") or {}).get("thread_id", "")

        if flow.get("sourceDocuments"):
            emit(self.event_sink, "stream_source_documents", chat_id, flow["sourceDocuments"])
        if flow.get("usedTools"):
            emit(self.event_sink, "stream_used_tools", chat_id, flow["usedTools"])
        if flow.get("artifacts"):
            emit(self.event_sink, "stream_artifacts", chat_id, flow["artifacts"])
        emit(self.event_sink, "stream_end", chat_id)
        return {}


# ── Condition ───────────────────────────────────────────────────────────────

_NUMERIC = re.compile(r"-?\d*\.?\d+")


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return math.nan
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    return float(text) if _NUMERIC.fullmatch(text) else math.nan


def _as_text(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


_STRING_OPS = {
    "Contains":     lambda a, b: b in a,
    "Not Contains": lambda a, b: b not in a,
    "Start With":   lambda a, b: a.startswith(b),
    "End With":     lambda a, b: a.endswith(b),
    "Is":           lambda a, b: a == b,
    "Is Not":       lambda a, b: a != b,
}

_NUMERIC_OPS = {
    "Greater Than":             lambda a, b: a > b,
    "Less Than":                lambda a, b: a < b,
    "Equal To":                 lambda a, b: a == b,
    "Not Equal To":             lambda a, b: a != b,
    "Greater Than or Equal To": lambda a, b: a >= b,
    "Less Than or Equal To":    lambda a, b: a <= b,
}

CONDITION_OPERATIONS = (*_STRING_OPS, "Is Empty", "Is Not Empty", *_NUMERIC_OPS)


def check_condition(value: Any, operation: str, expected: Any = "") -> bool:
    """
    Evaluate one condition. Numeric operations fail closed: anything that
    isn't a number on either side compares False.
    """
    if _is_empty(value):
        return operation == "Is Empty"

    if operation == "Is Empty":
        return not _as_text(value).strip()
    if operation == "Is Not Empty":
        return bool(_as_text(value).strip())

    if operation in _STRING_OPS:
        return _STRING_OPS[operation](_as_text(value), _as_text("" if expected is None else expected))

    if operation in _NUMERIC_OPS:
        left, right = _to_number(value), _to_number(expected)
        if math.isnan(left) or math.isnan(right):
            return False
        return _NUMERIC_OPS[operation](left, right)

    logger.warning("[condition] Unknown operation %r", operation)
    return False


class ConditionRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    variable: str
    operation: str
    value: Any = ""
    output: str


class ConditionNode:
    kind = NodeKind.CONDITION

    def __init__(
        self,
        node_id: str,
        rules: Sequence[ConditionRule],
        default_output: str = DEFAULT_BRANCH,
        event_sink: Any = None,
        variables: VariableResolver | None = None,
    ):
        self.node_id = node_id
        self.rules = list(rules)
        self.default_output = default_output
        self.event_sink = event_sink
        self.variables = variables

    @property
    def branches(self) -> list[str]:
        names = []
        for name in [rule.output for rule in self.rules] + [self.default_output]:
            if name not in names:
                names.append(name)
        return names

    def choose(self, namespace: Mapping[str, Any]) -> str:
        for rule in self.rules:
            value = resolve_reference(rule.variable, namespace)
            expected = resolve_reference(rule.value, namespace)
            if check_condition(value, rule.operation, expected):
                return rule.output
        return self.default_output

    async def execute(self, state: Mapping, config: RunnableConfig | None = None) -> dict:
        variables = []
        if self.variables is not None:
            variables = await self.variables.get_vars({"nodeId": self.node_id})
        context = FlowContext.from_run(state, config, variables)

        messages = list(state.get("messages") or [])
        last_output = extract_output_text(messages[-1].content) if messages else ""
        branch = self.choose(context.namespace(last_output))

        emit(self.event_sink, "stream_next_agent", context.chat_id, branch)
        logger.info("[condition] %s → %s", self.node_id, branch)

        conditions = dict((state.get("flow") or {}).get("conditions") or {})
        conditions[self.node_id] = branch
        return {"flow": {"conditions": conditions}}
