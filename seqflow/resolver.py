"""
State Update Resolver
=====================
Computes the custom-state patch an agent node applies after it finishes.

Two authoring modes:

  table  rows of {key, value}. A value of `$flow.<path>` is read from the
         run namespace, `$vars.<name>` from the flow variables; anything
         else is taken literally.
  code   a script run by the injected ScriptRunner with `flow` and `vars`
         bound. It must return a dict.

Both read the same namespace, built once per node execution from an
immutable FlowContext plus the node's normalised output:

    {chatflowId, sessionId, chatId, input, output, state, vars}
"""
import copy
import logging
import os
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Literal, Mapping, Sequence

from langchain_core.messages import HumanMessage
from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidReturnTypeError, MissingKeyError
from .sandbox import ScriptRunner, SimpleEvalScriptRunner
from .state import PENDING_APPROVALS_KEY

logger = logging.getLogger(__name__)

FLOW_PREFIX = "$flow"
VARS_PREFIX = "$vars"


# ── Variables ───────────────────────────────────────────────────────────────

def prepare_vars(variables: Sequence[Mapping[str, Any]] | None) -> dict:
    """
    Flatten {name, type, value} records into name → value.

    `runtime` variables are read from the process environment at call time
    (missing → ""); every other type passes its value through.
    """
    prepared = {}
    for var in variables or []:
        name = var.get("name")
        if not name:
            continue
        if var.get("type") == "runtime":
            prepared[name] = os.getenv(name, "")
        else:
            prepared[name] = var.get("value")
    return prepared


# ── Path lookup ─────────────────────────────────────────────────────────────

_PATH_TOKEN = re.compile(r"""\[\s*(-?\d+)\s*\]|\[\s*["']([^"']*)["']\s*\]|([^.\[\]]+)""")
_INT = re.compile(r"-?\d+")
_MISSING = object()


def _path_tokens(path: str) -> list[str | int]:
    tokens: list[str | int] = []
    for match in _PATH_TOKEN.finditer(path):
        index, quoted, name = match.groups()
        if index is not None:
            tokens.append(int(index))
        elif quoted is not None:
            tokens.append(quoted)
        else:
            tokens.append(name.strip())
    return tokens


def _step(obj: Any, token: str | int) -> Any:
    if isinstance(obj, Mapping):
        if token in obj:
            return obj[token]
        if isinstance(token, int) and str(token) in obj:
            return obj[str(token)]
        return _MISSING

    if isinstance(obj, Sequence) and not isinstance(obj, (str, bytes)):
        if isinstance(token, str) and _INT.fullmatch(token):
            token = int(token)
        if isinstance(token, int):
            try:
                return obj[token]
            except IndexError:
                return _MISSING
        if token == "length":
            return len(obj)
        return _MISSING

    if isinstance(token, str) and not token.startswith("_"):
        return getattr(obj, token, _MISSING)
    return _MISSING


def resolve_path(obj: Any, path: str) -> Any:
    """
    Read a dotted / bracketed path such as `output.usedTools[-1].tool`.

    Mappings are indexed by key, sequences by (possibly negative) index and
    anything else by attribute. A miss anywhere along the path returns None.
    """
    if path is None:
        return None
    current = obj
    for token in _path_tokens(str(path)):
        if current is None:
            return None
        current = _step(current, token)
        if current is _MISSING:
            return None
    return current


def resolve_reference(value: Any, namespace: Mapping[str, Any]) -> Any:
    if not isinstance(value, str):
        return value
    ref = value.strip()
    if ref == FLOW_PREFIX:
        return dict(namespace)
    if ref.startswith(FLOW_PREFIX + ".") or ref.startswith(FLOW_PREFIX + "["):
        return resolve_path(namespace, ref[len(FLOW_PREFIX):].lstrip("."))
    if ref.startswith(VARS_PREFIX + ".") or ref.startswith(VARS_PREFIX + "["):
        return resolve_path(namespace, ref[1:])
    return value


# ── Run context ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FlowContext:
    """Read-only view of the run, built once at node entry."""

    chatflow_id: str = ""
    session_id: str = ""
    chat_id: str = ""
    input: str = ""
    state: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    vars: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_run(cls, state: Mapping, config: Mapping | None, variables: Sequence[Mapping] | None = None):
        configurable = (config or {}).get("configurable", {})
        flow = state.get("flow") or {}

        session_id = flow.get("sessionId") or configurable.get("thread_id") or ""
        chat_id = flow.get("chatId") or configurable.get("chat_id") or session_id
        run_input = flow.get("input") or configurable.get("input") or ""
        if not run_input:
            last_human = next(
                (m for m in reversed(list(state.get("messages") or [])) if isinstance(m, HumanMessage)),
                None,
            )
            if last_human is not None and isinstance(last_human.content, str):
                run_input = last_human.content

        custom = {
            k: copy.deepcopy(v) for k, v in (state.get("state") or {}).items()
            if k != PENDING_APPROVALS_KEY
        }
        return cls(
            chatflow_id=flow.get("chatflowId") or configurable.get("chatflow_id") or "",
            session_id=session_id,
            chat_id=chat_id,
            input=run_input,
            state=MappingProxyType(custom),
            vars=MappingProxyType(prepare_vars(variables)),
        )

    def namespace(self, output: Any = None) -> dict:
        return {
            "chatflowId": self.chatflow_id,
            "sessionId":  self.session_id,
            "chatId":     self.chat_id,
            "input":      self.input,
            "output":     copy.deepcopy(output),
            "state":      copy.deepcopy(dict(self.state)),
            "vars":       dict(self.vars),
        }

    def as_tool_context(self) -> dict:
        return {
            "chatId":    self.chat_id,
            "sessionId": self.session_id,
            "input":     self.input,
            "state":     copy.deepcopy(dict(self.state)),
        }


# ── Update-state configuration ──────────────────────────────────────────────

class StateUpdateRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str = ""
    value: Any = None


class StateUpdateConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: Literal["table", "code"] = "table"
    rows: list[StateUpdateRow] = Field(default_factory=list)
    code: str = ""


class StateUpdateResolver:
    def __init__(self, config: StateUpdateConfig | None, script_runner: ScriptRunner | None = None):
        self.config = config
        self.script_runner = script_runner or SimpleEvalScriptRunner()

    @property
    def enabled(self) -> bool:
        if self.config is None:
            return False
        if self.config.mode == "code":
            return bool(self.config.code.strip())
        return bool(self.config.rows)

    async def resolve(self, context: FlowContext, output: Any) -> dict:
        if not self.enabled:
            return {}

        namespace = context.namespace(output)

        if self.config.mode == "table":
            patch = {}
            for row in self.config.rows:
                key = row.key.strip()
                if not key:
                    raise MissingKeyError("Key is required")
                patch[key] = resolve_reference(row.value, namespace)
        else:
            patch = await self.script_runner.run(
                self.config.code, {"flow": namespace, "vars": namespace["vars"]},
            )
            if not isinstance(patch, dict):
                raise InvalidReturnTypeError("Return output must be an object")

        if PENDING_APPROVALS_KEY in patch:
            logger.warning("[resolver] %r is reserved — ignoring it in state update", PENDING_APPROVALS_KEY)
            patch = {k: v for k, v in patch.items() if k != PENDING_APPROVALS_KEY}

        logger.debug("[resolver] State update keys: %s", list(patch))
        return patch
