"""
Interrupt / Approval Controller
===============================
State machine for agents that need a human's approval before their tool
calls run.

    Idle ── model returns tool calls ──────────────► AwaitingApproval
                                                     (graph pauses before
                                                      tool_<node id>)

    AwaitingApproval ── resumed, trailing tool messages
                        tagged with this node id ──► Idle
                        (results folded into the agent's output)

    AwaitingApproval ── resumed any other way ─────► AwaitingApproval
                        (the new AI message is tagged as a request again)

Intent is never inferred from message shape. Every message the controller
produces carries an explicit envelope in additional_kwargs["interrupt"]:

    {"kind": "interrupt_request" | "interrupt_resolution",
     "nodeId": "<agent node id>",
     "payload": {...}}

Everything needed to resume — the proposed tool calls, the tool node name,
the button labels — lives in the checkpointed FlowState
(state.pendingApprovals[node_id] and uiState.approval), never in memory.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence
from uuid import uuid4

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage

from .approval import (
    DEFAULT_APPROVAL_PROMPT,
    DEFAULT_APPROVE_TEXT,
    DEFAULT_REJECT_TEXT,
    ApprovalComposer,
    format_approval_prompt,
)
from .events import emit
from .state import PENDING_APPROVALS_KEY
from .tool_node import collect_records

logger = logging.getLogger(__name__)

INTERRUPT_KEY = "interrupt"
DENIED_KEY = "toolCallsDenied"


class InterruptKind(str, Enum):
    REQUEST = "interrupt_request"
    RESOLUTION = "interrupt_resolution"


@dataclass(frozen=True)
class InterruptEnvelope:
    kind: InterruptKind
    node_id: str
    payload: dict

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "nodeId": self.node_id, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: Any) -> "InterruptEnvelope | None":
        if not isinstance(data, dict):
            return None
        try:
            return cls(InterruptKind(data.get("kind")), data.get("nodeId", ""), data.get("payload") or {})
        except ValueError:
            return None

    @classmethod
    def from_message(cls, message: BaseMessage) -> "InterruptEnvelope | None":
        return cls.from_dict((message.additional_kwargs or {}).get(INTERRUPT_KEY))

    def attach(self, message: BaseMessage) -> BaseMessage:
        """Return a copy of the message carrying this envelope."""
        kwargs = {**(message.additional_kwargs or {}), INTERRUPT_KEY: self.to_dict()}
        return message.model_copy(update={"additional_kwargs": kwargs})


@dataclass(frozen=True)
class InterruptResolution:
    """Tool results (or denials) that answered a pending approval."""

    node_id: str
    messages: tuple[ToolMessage, ...]

    @property
    def denied(self) -> bool:
        return any((m.additional_kwargs or {}).get(DENIED_KEY) for m in self.messages)

    def records(self) -> tuple[list, list, list]:
        return collect_records(self.messages)

    def envelope(self) -> InterruptEnvelope:
        return InterruptEnvelope(InterruptKind.RESOLUTION, self.node_id, {
            "toolCallIds": [m.tool_call_id for m in self.messages],
            "denied": self.denied,
        })


class ApprovalController:
    def __init__(
        self,
        node_id: str,
        tool_node: str,
        approval_prompt: str | None = None,
        approve_text: str | None = None,
        reject_text: str | None = None,
        composer: ApprovalComposer | None = None,
        event_sink: Any = None,
    ):
        self.node_id = node_id
        self.tool_node = tool_node
        self.approval_prompt = approval_prompt or DEFAULT_APPROVAL_PROMPT
        self.approve_text = approve_text or DEFAULT_APPROVE_TEXT
        self.reject_text = reject_text or DEFAULT_REJECT_TEXT
        self.composer = composer
        self.event_sink = event_sink

    # ── Reading state ───────────────────────────────────────────────────────

    def find_resolution(self, messages: Sequence[BaseMessage]) -> InterruptResolution | None:
        """Trailing tool messages tagged with this node id, or None."""
        trailing = []
        for msg in reversed(list(messages or [])):
            if not isinstance(msg, ToolMessage):
                break
            trailing.append(msg)

        tagged = [m for m in reversed(trailing) if (m.additional_kwargs or {}).get("nodeId") == self.node_id]
        if not tagged:
            return None
        return InterruptResolution(self.node_id, tuple(tagged))

    def pending(self, state: dict) -> dict | None:
        envelope = InterruptEnvelope.from_dict(
            ((state.get("state") or {}).get(PENDING_APPROVALS_KEY) or {}).get(self.node_id)
        )
        if envelope is None or envelope.kind is not InterruptKind.REQUEST:
            return None
        return envelope.payload

    # ── Transitions ─────────────────────────────────────────────────────────

    async def approval_text(self, tool_calls: list[dict]) -> str:
        if self.composer is not None:
            try:
                return await self.composer.compose(self.approval_prompt, tool_calls)
            except Exception as exc:
                logger.warning("[interrupts] Approval composer failed, using template: %s", exc)
        return format_approval_prompt(self.approval_prompt, tool_calls)

    async def request(self, message: AIMessage, chat_id: str) -> dict:
        """Idle/AwaitingApproval → AwaitingApproval for the given tool-calling message."""
        if not message.id:
            message = message.model_copy(update={"id": str(uuid4())})

        tool_calls = [dict(tc) for tc in message.tool_calls]
        prompt = await self.approval_text(tool_calls)
        action = {
            "id": message.id,
            "prompt": prompt,
            "elements": [
                {"type": "approve-button", "label": self.approve_text},
                {"type": "reject-button", "label": self.reject_text},
            ],
            "mapping": {
                "approve": self.approve_text,
                "reject": self.reject_text,
                "toolCalls": tool_calls,
            },
        }
        envelope = InterruptEnvelope(InterruptKind.REQUEST, self.node_id, {
            "toolCalls": tool_calls,
            "toolNode": self.tool_node,
            "prompt": prompt,
            "approveText": self.approve_text,
            "rejectText": self.reject_text,
            "action": action,
        })

        emit(self.event_sink, "stream_action", chat_id, action)
        logger.info(
            "[interrupts] %s awaiting approval for %s",
            self.node_id, [tc.get("name") for tc in tool_calls],
        )
        return {
            "messages": [envelope.attach(message)],
            "uiState":  {"approval": {**envelope.payload, "nodeId": self.node_id}},
            "state":    {PENDING_APPROVALS_KEY: {self.node_id: envelope.to_dict()}},
        }

    def resolve(self, ui_state: dict | None = None) -> dict:
        """AwaitingApproval → Idle: clear this node's pending approval only."""
        logger.info("[interrupts] %s approval resolved", self.node_id)
        update = {"state": {PENDING_APPROVALS_KEY: {self.node_id: None}}}

        shown = (ui_state or {}).get("approval")
        if shown is None or not isinstance(shown, dict) or shown.get("nodeId") in (None, self.node_id):
            update["uiState"] = {"approval": None}
        return update
