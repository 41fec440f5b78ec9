"""
Prompt Assembly
===============
Everything an agent node needs to turn FlowState into the message list it
sends to the model.

  escape_braces_with_colon  — `{"a": 1}` style JSON in a prompt becomes a
                              literal instead of a template variable
  get_input_variables       — template variables a prompt expects
  select_history            — which part of the conversation the agent sees
  restructure_messages      — drop content the model can't take
  strip_dangling_tool_calls — no tool call without its result, and vice versa
  resolve_prompt_values     — `$flow.state.*` and node-output references
  build_prompt_messages     — ChatPromptTemplate: system, few-shot, history,
                              images, human
"""
import json
import logging
import re
from string import Formatter
from typing import Any, Iterable, Mapping, Sequence

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
    convert_to_messages,
)
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

HISTORY_SELECTIONS = ("all_messages", "last_message", "user_question", "empty")

_BRACE_GROUP = re.compile(r"\{([^{}]*?)\}")
_INVALID_IMAGE_MARKDOWN = re.compile(r"!\[.*?\]\((?!https?://).*?\)")
_STATE_MESSAGE_CONTENT = re.compile(r"messages\[(-?\d+)\]\.content")

STATE_PREFIX = "$flow.state."
STATE_PLACEHOLDER = "$flow.state.<replace-with-key>"


# ── Templates ───────────────────────────────────────────────────────────────

def escape_braces_with_colon(text: str) -> str:
    if not text:
        return text or ""

    def repl(match: re.Match) -> str:
        inner = match.group(1)
        return "{{" + inner + "}}" if ":" in inner else match.group(0)

    return _BRACE_GROUP.sub(repl, text)


def get_input_variables(template: str) -> list[str]:
    """Variable names in an f-string prompt, in order of first appearance."""
    if not template:
        return []
    try:
        parsed = list(Formatter().parse(template))
    except ValueError as exc:
        raise ConfigurationError(f"Invalid prompt template: {exc}") from exc

    names = []
    for _, field_name, _, _ in parsed:
        if field_name and field_name not in names:
            names.append(field_name)
    return names


# ── History ─────────────────────────────────────────────────────────────────

def select_history(selection: str, run_input: str, messages: Sequence[BaseMessage]) -> list[BaseMessage]:
    if selection == "all_messages":
        return list(messages or [])

    if selection == "last_message":
        for msg in reversed(list(messages or [])):
            if not isinstance(msg, SystemMessage):
                return [msg]
        return []

    if selection == "user_question":
        first_human = next((m for m in messages or [] if isinstance(m, HumanMessage)), None)
        return [first_human] if first_human is not None else [HumanMessage(content=run_input or "")]

    if selection == "empty":
        return []

    raise ConfigurationError(f"Unhandled history selection: {selection}")


def restructure_messages(messages: Iterable[BaseMessage]) -> list[BaseMessage]:
    """
    Keep messages whose content is a string.

    A message carrying tool calls is kept even with structured content; its
    content is JSON-encoded into a copy.
    """
    kept = []
    for msg in messages:
        if getattr(msg, "tool_calls", None) and msg.content != "" and not isinstance(msg.content, str):
            msg = msg.model_copy(update={"content": json.dumps(msg.content)})
        if isinstance(msg.content, str):
            kept.append(msg)
    return kept


def strip_dangling_tool_calls(messages: Sequence[BaseMessage]) -> list[BaseMessage]:
    """
    Drop tool calls that have no matching ToolMessage and ToolMessages that
    answer no visible call. Chat APIs reject either.
    """
    answered = {m.tool_call_id for m in messages if isinstance(m, ToolMessage)}
    called = set()

    cleaned = []
    for msg in messages:
        if isinstance(msg, AIMessage) and msg.tool_calls:
            kept_calls = [tc for tc in msg.tool_calls if tc.get("id") in answered]
            if len(kept_calls) != len(msg.tool_calls):
                logger.debug(
                    "[prompts] Stripping %d unanswered tool call(s)",
                    len(msg.tool_calls) - len(kept_calls),
                )
                kwargs = {k: v for k, v in msg.additional_kwargs.items() if k != "tool_calls"}
                msg = msg.model_copy(update={"tool_calls": kept_calls, "additional_kwargs": kwargs})
                if not kept_calls and not msg.content:
                    continue
            called.update(tc.get("id") for tc in kept_calls)
        elif isinstance(msg, ToolMessage) and msg.tool_call_id not in called:
            continue
        cleaned.append(msg)
    return cleaned


# ── Prompt values ───────────────────────────────────────────────────────────

def _content_text(content: Any) -> Any:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        if not content:
            return ""
        first = content[0]
        if isinstance(first, str):
            return first
        if isinstance(first, Mapping) and first.get("text"):
            return first["text"]
        return json.dumps(first)
    return content


def _node_output(value: str, messages: Sequence[BaseMessage]) -> Any:
    """`{"id": "<node id>"}` refers to the last output of that node."""
    try:
        ref = json.loads(value)
    except (TypeError, ValueError):
        return None
    if not isinstance(ref, dict) or not ref.get("id"):
        return None
    outputs = [m for m in messages if m.additional_kwargs.get("nodeId") == ref["id"]]
    return _content_text(outputs[-1].content) if outputs else None


def _state_value(value: str, custom_state: Mapping, messages: Sequence[BaseMessage]) -> Any:
    if value == STATE_PLACEHOLDER:
        return value

    match = _STATE_MESSAGE_CONTENT.search(value)
    if match:
        index = int(match.group(1))
        try:
            content = messages[index].content
        except IndexError:
            return ""
        return content or ""

    key = value[len(STATE_PREFIX):]
    if key in custom_state:
        found = custom_state[key]
    elif key == "messages":
        found = [m.model_dump() for m in messages]
    else:
        return ""
    if isinstance(found, (dict, list)):
        return json.dumps(found, default=str)
    return found


def resolve_prompt_values(
    values: Mapping[str, Any] | None,
    custom_state: Mapping[str, Any],
    messages: Sequence[BaseMessage],
) -> dict:
    resolved = {}
    for name, value in (values or {}).items():
        if isinstance(value, str):
            node_output = _node_output(value, messages)
            if node_output is not None:
                value = node_output
            if isinstance(value, str) and value.startswith(STATE_PREFIX):
                value = _state_value(value, custom_state, messages)
        resolved[name] = value
    return resolved


# ── Assembly ────────────────────────────────────────────────────────────────

def coerce_message_history(history: Any) -> list[BaseMessage]:
    """Few-shot messages returned by a message-history script."""
    if not isinstance(history, list):
        raise ConfigurationError("Returned message history must be an array")
    try:
        return convert_to_messages(history)
    except (ValueError, TypeError, NotImplementedError) as exc:
        raise ConfigurationError(f"Invalid message history: {exc}") from exc


def build_prompt_messages(
    system_prompt: str,
    human_prompt: str,
    history: Sequence[BaseMessage],
    prompt_values: Mapping[str, Any],
    few_shot: Sequence[BaseMessage] = (),
    image_content: Sequence[dict] = (),
) -> list[BaseMessage]:
    parts: list = []
    if system_prompt:
        parts.append(("system", system_prompt))
    parts.extend(few_shot)
    parts.append(MessagesPlaceholder("messages"))
    if image_content:
        parts.append(HumanMessage(content=list(image_content)))
    if human_prompt:
        parts.append(("human", human_prompt))

    prompt = ChatPromptTemplate.from_messages(parts)
    return prompt.format_messages(messages=list(history), **prompt_values)


# ── Output ──────────────────────────────────────────────────────────────────

def remove_invalid_image_markdown(text: str) -> str:
    """Drop markdown images that don't point at an http(s) URL."""
    return _INVALID_IMAGE_MARKDOWN.sub("", text)


def extract_output_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for item in content:
            if isinstance(item, str):
                texts.append(item)
            elif isinstance(item, Mapping) and "text" in item:
                texts.append(str(item["text"]))
        return "\n".join(texts)
    if isinstance(content, Mapping):
        return str(content["text"]) if "text" in content else json.dumps(content, default=str)
    return "" if content is None else str(content)
