"""
Agent Node
==========
One LLM-driven step of a sequential flow.

Build time (AgentNode.__init__) validates the configuration and fails fast:
  - the agent needs a name
  - every `{variable}` in the system/human prompts needs a prompt value
  - an agent with tools needs a model that can bind them

Each execution:

    abort? ── select history ── assemble prompt ──┬── tools, no approval
                                                  │     ReAct loop: model ⇄ tools
                                                  │     until a final answer
                                                  ├── tools + approval
                                                  │     one model call; tool calls
                                                  │     go to ApprovalController
                                                  └── no tools
                                                        one model call
           ── normalise output ── update-state rules ── partial update

Returned update:
    messages  [AIMessage(name=agent, additional_kwargs={nodeId, usedTools,
               sourceDocuments, artifacts})]
    flow      accumulated usedTools / sourceDocuments / artifacts
    state     custom-state patch from the update-state rules

Errors: FlowError subclasses propagate unchanged; anything else is wrapped
in NodeExecutionError. A failed node returns no partial update.
"""
import logging
import re
from typing import Any, Literal, Mapping
from uuid import uuid4

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    message_chunk_to_message,
)
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool
from pydantic import BaseModel, ConfigDict, Field

from .approval import ApprovalComposer
from .collaborators import FileStore, VariableResolver
from .errors import ConfigurationError, FlowError, IterationLimitError, NodeExecutionError
from .events import check_abort, emit
from .interrupts import ApprovalController, InterruptResolution
from .multimodal import build_image_content
from .nodes import NodeKind
from .prompts import (
    HISTORY_SELECTIONS,
    build_prompt_messages,
    coerce_message_history,
    escape_braces_with_colon,
    extract_output_text,
    get_input_variables,
    remove_invalid_image_markdown,
    resolve_prompt_values,
    restructure_messages,
    select_history,
    strip_dangling_tool_calls,
)
from .providers import default_max_iterations, supports_tool_binding
from .resolver import FlowContext, StateUpdateConfig, StateUpdateResolver
from .sandbox import ScriptRunner, SimpleEvalScriptRunner
from .tool_node import accumulate_flow, collect_records, execute_tool_calls

logger = logging.getLogger(__name__)


class AgentConfig(BaseModel):
    """Design-time configuration of one agent node."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    node_id: str
    name: str
    model: BaseChatModel | None = None
    system_prompt: str = ""
    human_prompt: str = ""
    prompt_values: dict[str, Any] = Field(default_factory=dict)
    message_history: str = ""
    tools: list[BaseTool] = Field(default_factory=list)
    history_selection: Literal["all_messages", "last_message", "user_question", "empty"] = "all_messages"
    interrupt: bool = False
    max_iterations: int | None = None
    approval_prompt: str | None = None
    approve_text: str | None = None
    reject_text: str | None = None
    allow_image_uploads: bool = False
    update_state: StateUpdateConfig | None = None


def normalize_agent_name(label: str) -> str:
    return re.sub(r"\s", "_", label.strip().lower())


def normalize_output(content: Any, used_tools: list, source_documents: list, artifacts: list) -> dict:
    output = {"content": remove_invalid_image_markdown(extract_output_text(content))}
    if used_tools:
        output["usedTools"] = used_tools
    if source_documents:
        output["sourceDocuments"] = source_documents
    if artifacts:
        output["artifacts"] = artifacts
    return output


def should_stream(config: Mapping | None) -> bool:
    return bool(((config or {}).get("configurable") or {}).get("should_stream"))


class AgentNode:
    kind = NodeKind.AGENT

    def __init__(
        self,
        config: AgentConfig,
        event_sink: Any = None,
        variables: VariableResolver | None = None,
        file_store: FileStore | None = None,
        script_runner: ScriptRunner | None = None,
        approval_composer: ApprovalComposer | None = None,
    ):
        if not config.name or not config.name.strip():
            raise ConfigurationError("Agent name is required!")
        if config.history_selection not in HISTORY_SELECTIONS:
            raise ConfigurationError(f"Unhandled history selection: {config.history_selection}")

        self.config = config
        self.node_id = config.node_id
        self.name = normalize_agent_name(config.name)
        self.event_sink = event_sink
        self.variables = variables
        self.file_store = file_store
        self.script_runner = script_runner or SimpleEvalScriptRunner()

        self.system_prompt = escape_braces_with_colon(config.system_prompt)
        self.human_prompt = escape_braces_with_colon(config.human_prompt)
        expected = get_input_variables(self.system_prompt) + get_input_variables(self.human_prompt)
        if any(name not in config.prompt_values for name in expected):
            raise ConfigurationError("Agent input variables values are not provided!")

        if config.model is None:
            raise ConfigurationError(f"Agent {config.name} has no model")
        self.tools = list(config.tools)
        if self.tools and not supports_tool_binding(config.model):
            raise ConfigurationError("Agent Node only compatible with function calling models.")

        self.model = config.model
        self.bound_model = config.model.bind_tools(self.tools) if self.tools else config.model
        self.max_iterations = config.max_iterations or default_max_iterations()
        self.resolver = StateUpdateResolver(config.update_state, self.script_runner)

        self.tool_node_name = f"tool_{self.node_id}"
        self.controller = None
        if config.interrupt and self.tools:
            self.controller = ApprovalController(
                node_id=self.node_id,
                tool_node=self.tool_node_name,
                approval_prompt=config.approval_prompt,
                approve_text=config.approve_text,
                reject_text=config.reject_text,
                composer=approval_composer,
                event_sink=event_sink,
            )

    @property
    def requires_approval(self) -> bool:
        return self.controller is not None

    async def __call__(self, state: Mapping, config: RunnableConfig | None = None) -> dict:
        return await self.execute(state, config)

    async def execute(self, state: Mapping, config: RunnableConfig | None = None) -> dict:
        try:
            variables = await self._load_vars(state, config)
            context = FlowContext.from_run(state, config, variables)
            check_abort(config, self.event_sink, context.chat_id)
            return await self._run(state, config or {}, context)
        except FlowError:
            raise
        except Exception as exc:
            logger.exception("[agent] %s failed", self.node_id)
            raise NodeExecutionError(self.node_id, exc) from exc

    # ── Steps ───────────────────────────────────────────────────────────────

    async def _load_vars(self, state: Mapping, config: Mapping | None) -> list[dict]:
        if self.variables is None:
            return []
        flow = state.get("flow") or {}
        return await self.variables.get_vars({
            "chatflowId": flow.get("chatflowId", ""),
            "sessionId":  flow.get("sessionId", ""),
            "chatId":     flow.get("chatId", ""),
            "nodeId":     self.node_id,
        })

    def _history(self, context: FlowContext, messages: list[BaseMessage], resolution: InterruptResolution | None) -> list[BaseMessage]:
        selected = select_history(self.config.history_selection, context.input, messages)
        if resolution is not None and self.config.history_selection != "all_messages":
            # The model must see the call it made and the answers to it.
            first = messages.index(resolution.messages[0])
            request = [messages[first - 1]] if first > 0 and isinstance(messages[first - 1], AIMessage) else []
            exchange = [*request, *resolution.messages]
            moved = {id(m) for m in exchange}
            selected = [m for m in selected if id(m) not in moved] + exchange
        return strip_dangling_tool_calls(restructure_messages(selected))

    async def _few_shot(self, context: FlowContext) -> list[BaseMessage]:
        if not self.config.message_history.strip():
            return []
        result = await self.script_runner.run(
            self.config.message_history,
            {"flow": context.namespace(), "vars": dict(context.vars)},
        )
        return coerce_message_history(result)

    async def _images(self, context: FlowContext, config: Mapping) -> list[dict]:
        if not self.config.allow_image_uploads:
            return []
        uploads = (config.get("configurable") or {}).get("uploads")
        return await build_image_content(uploads, self.file_store, context.chatflow_id, context.chat_id)

    async def _prompt(self, state: Mapping, config: Mapping, context: FlowContext, resolution=None) -> list[BaseMessage]:
        messages = list(state.get("messages") or [])
        return build_prompt_messages(
            self.system_prompt,
            self.human_prompt,
            self._history(context, messages, resolution),
            resolve_prompt_values(self.config.prompt_values, context.state, messages),
            few_shot=await self._few_shot(context),
            image_content=await self._images(context, config),
        )

    async def _call_model(self, runnable, messages: list[BaseMessage], config: Mapping, context: FlowContext) -> AIMessage:
        check_abort(config, self.event_sink, context.chat_id)

        if not should_stream(config):
            return await runnable.ainvoke(messages, config=config)

        aggregated = None
        final = None
        async for chunk in runnable.astream(messages, config=config):
            if isinstance(chunk, AIMessageChunk):
                token = extract_output_text(chunk.content)
                if token:
                    emit(self.event_sink, "stream_token", context.chat_id, token)
                aggregated = chunk if aggregated is None else aggregated + chunk
            elif isinstance(chunk, BaseMessage):
                final = chunk
        if final is not None:
            return final
        if aggregated is None:
            return AIMessage(content="")
        return message_chunk_to_message(aggregated)

    async def _react(self, prompt: list[BaseMessage], config: Mapping, context: FlowContext) -> tuple[AIMessage, list]:
        scratchpad = list(prompt)
        tool_messages = []
        for iteration in range(self.max_iterations):
            result = await self._call_model(self.bound_model, scratchpad, config, context)
            if not result.tool_calls:
                return result, tool_messages

            logger.info(
                "[agent] %s iteration %d → %s",
                self.name, iteration + 1, [tc["name"] for tc in result.tool_calls],
            )
            outputs = await execute_tool_calls(
                result.tool_calls, self.tools, context, self.node_id, config, self.event_sink,
            )
            scratchpad.extend([result, *outputs])
            tool_messages.extend(outputs)

        raise IterationLimitError(self.max_iterations)

    def _tag(self, message: AIMessage, **extra) -> AIMessage:
        kwargs = {**(message.additional_kwargs or {}), "nodeId": self.node_id, **extra}
        return message.model_copy(update={"name": self.name, "additional_kwargs": kwargs})

    async def _complete(self, context: FlowContext, output: dict, flow_update: dict, extra: dict | None = None) -> dict:
        patch = await self.resolver.resolve(context, output)

        used_tools = output.get("usedTools", [])
        source_documents = output.get("sourceDocuments", [])
        artifacts = output.get("artifacts", [])
        message = AIMessage(
            content=output["content"],
            name=self.name,
            additional_kwargs={
                "nodeId": self.node_id,
                "usedTools": used_tools,
                "sourceDocuments": source_documents,
                "artifacts": artifacts,
                **(extra or {}),
            },
        )

        emit(self.event_sink, "stream_agent_reasoning", context.chat_id, [{
            "agentName": self.config.name,
            "nodeId": self.node_id,
            "messages": [output["content"]],
            "usedTools": used_tools,
            "sourceDocuments": source_documents,
            "artifacts": artifacts,
            "state": patch,
        }])
        return {"messages": [message], "flow": flow_update, "state": patch}

    async def _run(self, state: Mapping, config: Mapping, context: FlowContext) -> dict:
        if self.tools and self.controller is None:
            prompt = await self._prompt(state, config, context)
            result, tool_messages = await self._react(prompt, config, context)
            used_tools, source_documents, artifacts = collect_records(tool_messages)
            output = normalize_output(result.content, used_tools, source_documents, artifacts)
            flow = accumulate_flow(state.get("flow"), used_tools, source_documents, artifacts)
            return await self._complete(context, output, flow)

        if self.controller is not None:
            return await self._run_with_approval(state, config, context)

        prompt = await self._prompt(state, config, context)
        result = await self._call_model(self.model, prompt, config, context)
        return await self._complete(context, normalize_output(result.content, [], [], []), {})

    async def _run_with_approval(self, state: Mapping, config: Mapping, context: FlowContext) -> dict:
        controller = self.controller
        messages = list(state.get("messages") or [])
        resolution = controller.find_resolution(messages)
        pending = controller.pending(state)

        prompt = await self._prompt(state, config, context, resolution)
        result = await self._call_model(self.bound_model, prompt, config, context)

        if result.tool_calls:
            return await controller.request(self._tag(result), context.chat_id)

        if resolution is None and pending is not None:
            # Resumed with something other than the answer to our calls.
            retry = [{**tc, "id": f"call_{uuid4().hex[:24]}"} for tc in pending.get("toolCalls", [])]
            logger.info("[agent] %s resumed without a decision — asking again", self.name)
            return await controller.request(
                self._tag(result.model_copy(update={"tool_calls": retry, "id": None})), context.chat_id,
            )

        if resolution is None:
            return await self._complete(context, normalize_output(result.content, [], [], []), {})

        used_tools, source_documents, artifacts = resolution.records()
        output = normalize_output(result.content, used_tools, source_documents, artifacts)
        update = await self._complete(
            context, output, {}, {"interrupt": resolution.envelope().to_dict()},
        )
        cleared = controller.resolve(state.get("uiState"))
        update["state"] = {**update["state"], **cleared["state"]}
        if "uiState" in cleared:
            update["uiState"] = cleared["uiState"]
        return update
