"""
seqflow — Sequential Agent Flow Package
=======================================

Package layout:

    errors.py         FlowError hierarchy (configuration vs execution)
    state.py          FlowState channels, reducers, apply_update()
    events.py         EventSink protocol, emit(), abort checks
    collaborators.py  VariableResolver / FileStore interfaces + in-memory impls
    sandbox.py        SimpleEvalScriptRunner for update-state and history scripts
    resolver.py       FlowContext, $flow / $vars references, StateUpdateResolver
    prompts.py        History selection, prompt assembly, output cleanup
    multimodal.py     Image upload → prompt content
    tool_node.py      Concurrent tool execution, sentinel parsing, ToolExecutionNode
    approval.py       Approval prompt formatting + DSPy composer
    interrupts.py     InterruptEnvelope, ApprovalController
    agent_node.py     AgentConfig, AgentNode (ReAct loop, approval, streaming)
    nodes.py          Start / End / Condition nodes, NodeKind
    routing.py        Pure routing functions for conditional edges
    providers.py      LLM + DSPy provider detection and construction
    checkpointing.py  SQLite + memory checkpoint backend management
    graph.py          FlowGraph — declares, validates and compiles a flow
    session.py        FlowSession — high-level multi-turn chat interface

Entry points for external callers:
"""
from .agent_node import AgentConfig, AgentNode
from .checkpointing import get_db_path, memory_checkpointer, sqlite_checkpointer, thread_config
from .collaborators import InMemoryFileStore, StaticVariableResolver
from .errors import (
    ConfigurationError,
    ExecutionError,
    FlowCancelledError,
    FlowError,
    IterationLimitError,
    InvalidReturnTypeError,
    MissingKeyError,
    NodeExecutionError,
    ScriptError,
    ToolExecutionError,
    ToolNotFoundError,
)
from .events import NullEventSink, RecordingEventSink
from .graph import FlowGraph
from .nodes import ConditionRule, NodeKind
from .resolver import FlowContext, StateUpdateConfig, StateUpdateRow
from .sandbox import SimpleEvalScriptRunner
from .session import FlowSession
from .state import FlowState, StateField, apply_update
from .tool_node import ARTIFACTS_PREFIX, SOURCE_DOCUMENTS_PREFIX

__all__ = [
    "FlowSession",
    "FlowGraph",
    "FlowState",
    "StateField",
    "apply_update",
    "AgentConfig",
    "AgentNode",
    "ConditionRule",
    "NodeKind",
    "FlowContext",
    "StateUpdateConfig",
    "StateUpdateRow",
    "SimpleEvalScriptRunner",
    "StaticVariableResolver",
    "InMemoryFileStore",
    "NullEventSink",
    "RecordingEventSink",
    "SOURCE_DOCUMENTS_PREFIX",
    "ARTIFACTS_PREFIX",
    "sqlite_checkpointer",
    "memory_checkpointer",
    "get_db_path",
    "thread_config",
    "FlowError",
    "ConfigurationError",
    "ExecutionError",
    "ToolNotFoundError",
    "MissingKeyError",
    "InvalidReturnTypeError",
    "ScriptError",
    "ToolExecutionError",
    "IterationLimitError",
    "FlowCancelledError",
    "NodeExecutionError",
]
