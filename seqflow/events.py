"""
Event Sink
==========
Streaming side-channel from the nodes to whoever is watching the run
(an SSE endpoint, a websocket, a CLI printer).

Every emission goes through emit(): it is fire-and-forget. A sink that
raises is logged and ignored, so a broken client connection can never fail
a node.
"""
import logging
from typing import Any, Protocol, runtime_checkable

from .errors import FlowCancelledError

logger = logging.getLogger(__name__)


@runtime_checkable
class EventSink(Protocol):
    def stream_token(self, chat_id: str, token: str) -> None: ...
    def stream_agent_reasoning(self, chat_id: str, reasoning: list[dict]) -> None: ...
    def stream_next_agent(self, chat_id: str, next_agent: str) -> None: ...
    def stream_source_documents(self, chat_id: str, documents: list) -> None: ...
    def stream_used_tools(self, chat_id: str, used_tools: list) -> None: ...
    def stream_artifacts(self, chat_id: str, artifacts: list) -> None: ...
    def stream_action(self, chat_id: str, action: dict) -> None: ...
    def stream_abort(self, chat_id: str) -> None: ...
    def stream_end(self, chat_id: str) -> None: ...


class NullEventSink:
    """Discards every event. Used when a flow runs without a streaming client."""

    def __getattr__(self, name: str):
        if name.startswith("stream_"):
            return lambda *args, **kwargs: None
        raise AttributeError(name)


class RecordingEventSink:
    """
    Keeps every event in order as (method, args) tuples.

    Handy for the demo CLI and for tests that assert on what was streamed.
    """

    def __init__(self):
        self.events: list[tuple[str, tuple]] = []

    def __getattr__(self, name: str):
        if name.startswith("stream_"):
            def record(*args):
                self.events.append((name, args))
            return record
        raise AttributeError(name)

    def of(self, method: str) -> list[tuple]:
        return [args for name, args in self.events if name == method]

    def tokens(self, chat_id: str | None = None) -> str:
        return "".join(
            args[1] for args in self.of("stream_token")
            if chat_id is None or args[0] == chat_id
        )


def emit(sink: Any, method: str, *args) -> None:
    if sink is None:
        return
    try:
        getattr(sink, method)(*args)
    except Exception as exc:
        logger.warning("[events] %s failed: %s", method, exc)


def abort_requested(config: Any) -> bool:
    signal = ((config or {}).get("configurable") or {}).get("abort_signal")
    if signal is None:
        return False
    is_set = getattr(signal, "is_set", None)
    return bool(is_set()) if callable(is_set) else bool(signal)


def check_abort(config: Any, sink: Any, chat_id: str) -> None:
    """Raise FlowCancelledError (and tell the client) once the run is aborted."""
    if abort_requested(config):
        emit(sink, "stream_abort", chat_id)
        raise FlowCancelledError()
