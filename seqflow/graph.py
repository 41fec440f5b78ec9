"""
Graph Construction
==================
Assembles a LangGraph StateGraph from a declared sequential flow.

Example flow:

    START
      │
      ▼
    start ──► researcher ──► reviewer (approval) ──► router ──┬─► writer ──► end
                               │   ▲                         │
                   tool calls  ▼   │ results                 └─► end
                            tool_reviewer
                          ⚡ interrupt_before

Rules enforced at compile():
  - exactly one start node
  - every agent has a predecessor
  - every edge and branch targets a known node (or END)
  - agents and start/end nodes have at most one successor; fan-out goes
    through a condition node

An agent with approval enabled gets its own ToolExecutionNode named
`tool_<agent id>`. The agent → tool edge is conditional (route_after_agent)
and the graph is compiled with interrupt_before on every such tool node: the
thread pauses with the proposed calls checkpointed, and resumes when the
caller invokes it again.

Checkpointer injection works as before: compile() accepts any LangGraph
checkpoint saver and falls back to MemorySaver.
"""
import logging
from typing import Any, Mapping, Sequence

from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.memory import MemorySaver
from langgraph.graph import END, START, StateGraph

from .agent_node import AgentConfig, AgentNode
from .approval import ApprovalComposer
from .collaborators import FileStore, VariableResolver
from .errors import ConfigurationError
from .nodes import DEFAULT_BRANCH, ConditionNode, ConditionRule, EndNode, NodeKind, StartNode
from .routing import agent_router, condition_router
from .sandbox import ScriptRunner, SimpleEvalScriptRunner
from .state import StateField, build_state_schema
from .tool_node import ToolExecutionNode

logger = logging.getLogger(__name__)


class FlowGraph:
    """
    Declarative builder for one sequential flow.

    Args:
        state_fields:      custom state keys and their reducers
        event_sink:        receives streaming events from every node
        variables:         VariableResolver for $vars references
        file_store:        FileStore for image uploads
        script_runner:     runs update-state and message-history scripts
        approval_composer: optional DSPy composer for approval prompts
        default_model:     chat model for agents that don't name one
        chatflow_id:       written into flow.chatflowId by the start node
    """

    def __init__(
        self,
        state_fields: Sequence[StateField] = (),
        event_sink: Any = None,
        variables: VariableResolver | None = None,
        file_store: FileStore | None = None,
        script_runner: ScriptRunner | None = None,
        approval_composer: ApprovalComposer | None = None,
        default_model=None,
        chatflow_id: str = "",
    ):
        self.state_fields = list(state_fields)
        self.event_sink = event_sink
        self.variables = variables
        self.file_store = file_store
        self.script_runner = script_runner or SimpleEvalScriptRunner()
        self.approval_composer = approval_composer
        self.default_model = default_model
        self.chatflow_id = chatflow_id

        self.nodes: dict[str, Any] = {}
        self.edges: list[tuple[str, str]] = []
        self.branches: dict[str, dict[str, str]] = {}

    # ── Declaration ─────────────────────────────────────────────────────────

    def _register(self, node_id: str, node):
        if not node_id:
            raise ConfigurationError("Node id is required")
        if node_id in self.nodes or node_id in (START, END):
            raise ConfigurationError(f"Duplicate node id: {node_id}")
        self.nodes[node_id] = node
        return node

    def add_start(self, node_id: str = "start") -> StartNode:
        return self._register(node_id, StartNode(node_id, self.state_fields, self.chatflow_id))

    def add_agent(self, config: AgentConfig) -> AgentNode:
        if config.model is None and self.default_model is not None:
            config = config.model_copy(update={"model": self.default_model})
        node = AgentNode(
            config,
            event_sink=self.event_sink,
            variables=self.variables,
            file_store=self.file_store,
            script_runner=self.script_runner,
            approval_composer=self.approval_composer,
        )
        if node.requires_approval and node.tool_node_name in self.nodes:
            raise ConfigurationError(f"Duplicate node id: {node.tool_node_name}")
        return self._register(config.node_id, node)

    def add_condition(
        self,
        node_id: str,
        rules: Sequence[ConditionRule | Mapping],
        default_output: str = DEFAULT_BRANCH,
    ) -> ConditionNode:
        parsed = [r if isinstance(r, ConditionRule) else ConditionRule(**r) for r in rules]
        return self._register(
            node_id,
            ConditionNode(node_id, parsed, default_output, self.event_sink, self.variables),
        )

    def add_end(self, node_id: str = "end") -> EndNode:
        return self._register(node_id, EndNode(node_id, self.event_sink))

    def add_edge(self, source: str, target: str) -> "FlowGraph":
        self.edges.append((source, target))
        return self

    def add_branches(self, condition_id: str, mapping: Mapping[str, str]) -> "FlowGraph":
        self.branches.setdefault(condition_id, {}).update(mapping)
        return self

    # ── Validation ──────────────────────────────────────────────────────────

    def _of_kind(self, kind: NodeKind) -> list[str]:
        return [node_id for node_id, node in self.nodes.items() if node.kind is kind]

    def _successors(self, node_id: str) -> list[str]:
        return [target for source, target in self.edges if source == node_id]

    def validate(self) -> None:
        starts = self._of_kind(NodeKind.START)
        if len(starts) != 1:
            raise ConfigurationError(f"Flow must have exactly one start node, found {len(starts)}")

        for source, target in self.edges:
            if source not in self.nodes:
                raise ConfigurationError(f"Edge from unknown node: {source}")
            if target != END and target not in self.nodes:
                raise ConfigurationError(f"Edge to unknown node: {target}")
            if self.nodes[source].kind is NodeKind.CONDITION:
                raise ConfigurationError(f"Condition {source} routes through add_branches, not add_edge")

        targets = {target for _, target in self.edges}
        for mapping in self.branches.values():
            targets.update(mapping.values())
        for agent_id in self._of_kind(NodeKind.AGENT):
            if agent_id not in targets:
                raise ConfigurationError("Agent must have a predecessor!")

        for node_id, node in self.nodes.items():
            if node.kind is not NodeKind.CONDITION and len(self._successors(node_id)) > 1:
                raise ConfigurationError(f"Node {node_id} has more than one successor; use a condition node")

        for condition_id, mapping in self.branches.items():
            node = self.nodes.get(condition_id)
            if node is None or node.kind is not NodeKind.CONDITION:
                raise ConfigurationError(f"Branches declared for non-condition node: {condition_id}")
            for branch, target in mapping.items():
                if target != END and target not in self.nodes:
                    raise ConfigurationError(f"Branch {branch!r} of {condition_id} targets unknown node: {target}")

    # ── Compilation ─────────────────────────────────────────────────────────

    def compile(self, checkpointer: BaseCheckpointSaver | None = None):
        """
        Validate the flow and compile it.

        Returns:
            A compiled graph ready for ainvoke() / aget_state() calls.
        """
        self.validate()
        if checkpointer is None:
            checkpointer = MemorySaver()

        workflow = StateGraph(build_state_schema(self.state_fields))
        for node_id, node in self.nodes.items():
            workflow.add_node(node_id, node.execute)

        (start_id,) = self._of_kind(NodeKind.START)
        workflow.add_edge(START, start_id)

        interrupt_before = []
        for node_id, node in self.nodes.items():
            successors = self._successors(node_id)
            next_node = successors[0] if successors else END

            if node.kind is NodeKind.CONDITION:
                mapping = dict(self.branches.get(node_id, {}))
                path_map = {branch: mapping.get(branch, END) for branch in node.branches}
                workflow.add_conditional_edges(node_id, condition_router(node_id, node.default_output), path_map)
                continue

            if node.kind is NodeKind.AGENT and node.requires_approval:
                tool_name = node.tool_node_name
                tool_node = ToolExecutionNode(tool_name, node_id, node.tools, self.event_sink)
                workflow.add_node(tool_name, tool_node.execute)
                workflow.add_edge(tool_name, node_id)
                workflow.add_conditional_edges(
                    node_id,
                    agent_router(tool_name, next_node),
                    {tool_name: tool_name, next_node: next_node},
                )
                interrupt_before.append(tool_name)
                continue

            workflow.add_edge(node_id, next_node)

        logger.info(
            "[graph] Compiled %d nodes, approval gates: %s",
            len(self.nodes), interrupt_before or "none",
        )
        return workflow.compile(checkpointer=checkpointer, interrupt_before=interrupt_before)
