"""
Flow State
==========
Defines the shared state that flows through every node of a sequential
agent flow, and the reducers LangGraph uses to merge each node's partial
update into it.

Channels:

    messages   append_messages        — add_messages semantics: replace by id,
                                         otherwise append
    flow       merge_flow             — shallow merge (per-run metadata)
    uiState    channel_value_reducer  — each key replaced on its own;
                                         None removes the key
    state      make_custom_state_reducer(fields)
                                       — user-declared custom state, one
                                         operation per key (replace / append /
                                         callable)

The registry (name → Channel(default, reducer)) is the single source of
truth: build_state_schema() turns it into the TypedDict handed to
StateGraph, and apply_update() is the same merge expressed as a plain
function for callers outside the graph runtime.

Reducers never raise for well-typed input. A malformed update value is
dropped with a warning and the current value stands.
"""
import copy
import logging
from dataclasses import dataclass
from typing import Annotated, Any, Callable, Mapping, NamedTuple, Sequence

from langchain_core.messages import AnyMessage, BaseMessage, convert_to_messages
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Custom-state key holding approvals that are waiting for a human decision,
# keyed by agent node id.
PENDING_APPROVALS_KEY = "pendingApprovals"

# Per-run accumulators written to the flow channel.
FLOW_ACCUMULATORS = ("usedTools", "sourceDocuments", "artifacts")


# ── Reducers ────────────────────────────────────────────────────────────────

def _coerce_messages(values: Any) -> list[BaseMessage]:
    if values is None:
        return []
    if not isinstance(values, list):
        values = [values]

    messages = []
    for value in values:
        if isinstance(value, BaseMessage):
            messages.append(value)
            continue
        try:
            messages.extend(convert_to_messages([value]))
        except (ValueError, TypeError, NotImplementedError) as exc:
            logger.warning("[state] Dropping malformed message %r: %s", value, exc)
    return messages


def append_messages(current: Sequence[BaseMessage] | None, update: Any) -> list[BaseMessage]:
    """
    Merge new messages into the conversation.

    A message whose id matches an existing one replaces it in place;
    everything else is appended in update order. Messages without an id are
    copied before add_messages assigns one, so caller-owned objects are
    never mutated.
    """
    left = [m if m.id else m.model_copy() for m in _coerce_messages(current)]
    right = [m if m.id else m.model_copy() for m in _coerce_messages(update)]
    return add_messages(left, right)


def merge_flow(current: Mapping | None, update: Any) -> dict:
    if update is None:
        return dict(current or {})
    if not isinstance(update, Mapping):
        logger.warning("[state] Dropping non-mapping flow update: %r", update)
        return dict(current or {})
    return {**(current or {}), **update}


def channel_value_reducer(current: Mapping | None, update: Any) -> dict:
    """Replace each updated key independently. A key set to None is removed."""
    if update is None:
        return dict(current or {})
    if not isinstance(update, Mapping):
        logger.warning("[state] Dropping non-mapping uiState update: %r", update)
        return dict(current or {})

    merged = dict(current or {})
    for key, value in update.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def replace_value(current: Any, update: Any) -> Any:
    return update


def append_value(current: Any, update: Any) -> list:
    if current is None:
        base = []
    elif isinstance(current, list):
        base = current
    else:
        base = [current]

    if update is None:
        return list(base)
    if isinstance(update, (list, tuple)):
        return [*base, *update]
    return [*base, update]


def merge_pending_approvals(current: Mapping | None, update: Any) -> dict:
    """Pending approvals merge by node id; a node id set to None is cleared."""
    if update is None:
        return dict(current or {})
    if not isinstance(update, Mapping):
        logger.warning("[state] Dropping malformed pending approval update: %r", update)
        return dict(current or {})

    merged = dict(current or {})
    for node_id, payload in update.items():
        if payload is None:
            merged.pop(node_id, None)
        else:
            merged[node_id] = payload
    return merged


# ── Custom state ────────────────────────────────────────────────────────────

_OPERATIONS: dict[str, Callable[[Any, Any], Any]] = {
    "replace": replace_value,
    "append": append_value,
}


@dataclass(frozen=True)
class StateField:
    """One user-declared custom state key."""

    key: str
    default: Any = None
    operation: str | Callable[[Any, Any], Any] = "replace"

    def reducer(self) -> Callable[[Any, Any], Any]:
        if callable(self.operation):
            return self.operation
        op = _OPERATIONS.get(str(self.operation).lower())
        if op is None:
            logger.warning(
                "[state] Unknown operation %r for key %r — using replace",
                self.operation, self.key,
            )
            return replace_value
        return op

    def initial_value(self) -> Any:
        value = copy.deepcopy(self.default)
        if self.reducer() is append_value:
            if value is None:
                return []
            return value if isinstance(value, list) else [value]
        return value


def state_defaults(fields: Sequence[StateField]) -> dict:
    return {f.key: f.initial_value() for f in fields}


def make_custom_state_reducer(fields: Sequence[StateField] = ()) -> Callable[[Any, Any], dict]:
    """Build the per-key reducer for the custom `state` channel."""
    operations: dict[str, Callable[[Any, Any], Any]] = {}
    for field in fields:
        if not field.key:
            raise ConfigurationError("Key is required")
        operations[field.key] = field.reducer()
    operations[PENDING_APPROVALS_KEY] = merge_pending_approvals

    def reduce_state(current: Mapping | None, update: Any) -> dict:
        if update is None:
            return dict(current or {})
        if not isinstance(update, Mapping):
            logger.warning("[state] Dropping non-mapping custom state update: %r", update)
            return dict(current or {})

        merged = dict(current or {})
        for key, value in update.items():
            reducer = operations.get(key, replace_value)
            merged[key] = reducer(merged.get(key), value)
        return merged

    return reduce_state


# ── Channel registry ────────────────────────────────────────────────────────

class Channel(NamedTuple):
    default: Callable[[], Any]
    reducer: Callable[[Any, Any], Any]


def default_channels(fields: Sequence[StateField] = ()) -> dict[str, Channel]:
    return {
        "messages": Channel(list, append_messages),
        "flow":     Channel(dict, merge_flow),
        "uiState":  Channel(dict, channel_value_reducer),
        "state":    Channel(lambda: state_defaults(fields), make_custom_state_reducer(fields)),
    }


def build_state_schema(fields: Sequence[StateField] = ()) -> type:
    """Return the TypedDict StateGraph uses, one Annotated reducer per channel."""
    channels = default_channels(fields)
    return TypedDict("FlowState", {
        "messages": Annotated[list[AnyMessage], channels["messages"].reducer],
        "flow":     Annotated[dict, channels["flow"].reducer],
        "uiState":  Annotated[dict, channels["uiState"].reducer],
        "state":    Annotated[dict, channels["state"].reducer],
    })


def initial_values(channels: Mapping[str, Channel]) -> dict:
    return {name: channel.default() for name, channel in channels.items()}


def apply_update(values: Mapping, update: Mapping, channels: Mapping[str, Channel]) -> dict:
    """
    Merge one partial update into a state snapshot.

    For every key present in the update the channel's reducer combines the
    current value (or the channel default) with the new one. Keys absent
    from the update are untouched; unknown channels are dropped. The input
    snapshot is not mutated.
    """
    merged = dict(values)
    for key, value in update.items():
        channel = channels.get(key)
        if channel is None:
            logger.warning("[state] Dropping update for unknown channel %r", key)
            continue
        current = merged[key] if key in merged else channel.default()
        merged[key] = channel.reducer(current, value)
    return merged


FlowState = build_state_schema()
